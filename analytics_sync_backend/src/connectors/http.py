from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from src.core.errors import UpstreamUnavailable
from src.core.response import upstream_error


class BearerAPIClient:
    """Thin httpx wrapper for provider REST APIs called with a Bearer access token.

    Non-2xx answers are raised as engine errors through ``upstream_error`` so a 401 reaches
    the token manager as AuthExpired and 429/5xx reach the retry policy as transient errors.
    """

    def __init__(self, access_token: str, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _get_json(self, url: str, params: Any = None, failure_message: str = "Upstream request failed") -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self.transport) as client:
                resp = await client.get(url, params=params)
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"{failure_message}: {type(exc).__name__}") from exc
        if resp.status_code >= 400:
            raise upstream_error(resp.status_code, resp.text, headers=resp.headers, default_message=failure_message)
        return resp.json()
