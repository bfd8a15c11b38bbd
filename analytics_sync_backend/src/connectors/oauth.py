from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlencode

import httpx

from src.core.errors import RateLimited, TokenEndpointError, UpstreamUnavailable
from src.core.logging import get_logger
from src.core.response import _is_rate_limited

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenGrant:
    """Normalized token endpoint answer."""
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    refresh_token_expires_in: Optional[int] = None
    scope: Optional[str] = None
    realm_id: Optional[str] = None


def _positive_int(value: Any, default: Optional[int]) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def parse_grant(payload: Dict[str, Any]) -> TokenGrant:
    """Build a TokenGrant from a token endpoint JSON body; bad or missing expires_in falls back to an hour."""
    access = payload.get("access_token")
    if not access:
        raise TokenEndpointError("Token endpoint returned no access_token", oauth_error=payload.get("error"))
    expires_in = _positive_int(payload.get("expires_in"), None)
    if expires_in is None:
        logger.warning("Invalid expires_in from token endpoint; defaulting to %s seconds", DEFAULT_EXPIRES_IN)
        expires_in = DEFAULT_EXPIRES_IN
    return TokenGrant(
        access_token=access,
        refresh_token=payload.get("refresh_token") or None,
        expires_in=expires_in,
        refresh_token_expires_in=_positive_int(payload.get("x_refresh_token_expires_in"), None),
        scope=payload.get("scope"),
        realm_id=payload.get("realmId"),
    )


class OAuthClient:
    """Authorization-code and refresh-token grants against one provider token endpoint.

    ``client_auth`` selects how client credentials travel: in the form body (Google) or as
    HTTP Basic (Intuit).
    """

    def __init__(
        self,
        authorize_url: str,
        token_url: str,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        scopes: list[str],
        client_auth: Literal["body", "basic"] = "body",
        extra_authorize_params: Optional[Dict[str, str]] = None,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.client_auth = client_auth
        self.extra_authorize_params = extra_authorize_params or {}
        self.timeout = timeout
        self.transport = transport

    # PUBLIC_INTERFACE
    def authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        """Build the provider consent URL."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "redirect_uri": self.redirect_uri,
            "state": state,
            **self.extra_authorize_params,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.authorize_url}?{urlencode(params)}"

    # PUBLIC_INTERFACE
    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenGrant:
        data = {"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_uri}
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(data, "OAuth code exchange failed")

    # PUBLIC_INTERFACE
    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token}, "OAuth token refresh failed")

    async def _token_request(self, data: Dict[str, str], failure_message: str) -> TokenGrant:
        auth = None
        if self.client_auth == "basic":
            auth = httpx.BasicAuth(self.client_id, self.client_secret or "")
        else:
            data = {**data, "client_id": self.client_id}
            if self.client_secret:
                data["client_secret"] = self.client_secret
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.token_url, data=data, auth=auth, headers={"Accept": "application/json"})
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"{failure_message}: {type(exc).__name__}") from exc

        if resp.status_code >= 400:
            limited, retry_after = _is_rate_limited(resp.status_code, resp.headers)
            if limited:
                raise RateLimited("Token endpoint rate limited", retry_after=retry_after, upstream_status=resp.status_code)
            if resp.status_code >= 500:
                raise UpstreamUnavailable(failure_message, upstream_status=resp.status_code)
            oauth_error, description = _error_fields(resp)
            logger.error("%s with status %s (%s)", failure_message, resp.status_code, oauth_error)
            raise TokenEndpointError(f"{failure_message}: {description or oauth_error or resp.status_code}", oauth_error=oauth_error, upstream_status=resp.status_code)
        return parse_grant(resp.json())


def _error_fields(resp: httpx.Response) -> tuple[Optional[str], Optional[str]]:
    try:
        body = resp.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")
