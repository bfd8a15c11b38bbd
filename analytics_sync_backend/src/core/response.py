from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from src.core.errors import (
    AuthExpired,
    AuthRevoked,
    RateLimited,
    SyncError,
    UpstreamRequestError,
    UpstreamUnavailable,
)


# PUBLIC_INTERFACE
def ok(data: Dict[str, Any] | List[Any] | Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Produce a standardized success payload.
    Use "status": "ok" and include a top-level "data" wrapper so every endpoint shares one envelope.
    """
    return {
        "status": "ok",
        "data": data,
        "meta": meta or {},
    }


# PUBLIC_INTERFACE
def error_payload(
    code: str,
    message: str,
    retry_after: Optional[Union[int, float]] = None,
    details: Optional[Dict[str, Any]] = None,
    http_status: Optional[int] = None,
    requires_reauth: bool = False,
) -> Dict[str, Any]:
    """Produce a standardized error payload.

    - status: always "error"
    - code: machine-readable error code (e.g., AUTH_REVOKED, RATE_LIMITED, VALIDATION_ERROR, UPSTREAM_ERROR)
    - message: human-readable message
    - retry_after: optional seconds to wait (if rate limited)
    - details: optional structured extra info (safe; should not include secrets)
    - http_status: optional http status observed from upstream (for debugging/observability)
    - requires_reauth: present and true when the user has to reconnect the provider
    """
    payload: Dict[str, Any] = {
        "status": "error",
        "code": code,
        "message": message,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    if details:
        payload["details"] = details
    if http_status is not None:
        payload["http_status"] = http_status
    if requires_reauth:
        payload["requires_reauth"] = True
    return payload


# PUBLIC_INTERFACE
def payload_for(exc: SyncError) -> Dict[str, Any]:
    """Render a SyncError into the standard error payload."""
    return error_payload(
        code=exc.code,
        message=exc.message,
        retry_after=exc.retry_after,
        details=exc.details,
        http_status=exc.upstream_status,
        requires_reauth=isinstance(exc, AuthRevoked),
    )


def _is_rate_limited(status_code: Optional[int], headers: Mapping[str, Any] | None = None) -> Tuple[bool, Optional[float]]:
    if status_code == 429:
        retry_after_header = None
        if headers:
            for k in ("retry-after", "Retry-After", "x-rate-limit-reset", "X-Rate-Limit-Reset"):
                if k in headers:
                    retry_after_header = headers[k]
                    break
        if retry_after_header is None:
            return True, None
        try:
            # May be seconds or an HTTP date; only the seconds form is honored
            return True, float(retry_after_header)
        except (TypeError, ValueError):
            return True, None
    return False, None


# PUBLIC_INTERFACE
def upstream_error(
    upstream_status: Optional[int],
    upstream_text: Optional[str],
    headers: Optional[Mapping[str, Any]] = None,
    default_message: str = "Upstream service error",
) -> SyncError:
    """Map an upstream HTTP error response onto the engine's error taxonomy."""
    if upstream_status in (401, 403):
        return AuthExpired("Authorization with upstream service failed.", upstream_status=upstream_status)
    limited, retry_after = _is_rate_limited(upstream_status, headers)
    if limited:
        return RateLimited("Rate limit reached. Please retry later.", retry_after=retry_after, upstream_status=upstream_status)
    details = {"upstream": (upstream_text or "")[:500]}
    if upstream_status is None or upstream_status >= 500:
        return UpstreamUnavailable(default_message, details=details, upstream_status=upstream_status)
    return UpstreamRequestError(default_message, details=details, upstream_status=upstream_status)
