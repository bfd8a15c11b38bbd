from __future__ import annotations

from typing import Any, Dict, Optional, Union

from fastapi import status


class SyncError(Exception):
    """Base class for errors surfaced by the sync engine and its HTTP routes.

    Each subclass carries a stable machine-readable ``code`` and the HTTP status the
    API answers with; the FastAPI exception handler renders them through ``error_payload``.
    """

    code: str = "INTERNAL"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    transient: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[Union[int, float]] = None,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after = retry_after
        self.upstream_status = upstream_status


class AuthExpired(SyncError):
    """Provider rejected the access token (401/403). Handled by a forced refresh, never surfaced."""

    code = "AUTH_EXPIRED"
    http_status = status.HTTP_401_UNAUTHORIZED


class AuthRevoked(SyncError):
    """The user must re-authorize the provider connection."""

    code = "AUTH_REVOKED"
    http_status = status.HTTP_401_UNAUTHORIZED


class RateLimited(SyncError):
    code = "RATE_LIMITED"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    transient = True


class UpstreamUnavailable(SyncError):
    code = "UPSTREAM_UNAVAILABLE"
    http_status = status.HTTP_502_BAD_GATEWAY
    transient = True


class UpstreamRequestError(SyncError):
    """Provider refused the request for a reason retrying will not fix."""

    code = "UPSTREAM_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY


class TokenEndpointError(SyncError):
    """OAuth token endpoint answered with an error body; ``oauth_error`` holds its ``error`` field."""

    code = "OAUTH_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, oauth_error: Optional[str] = None, upstream_status: Optional[int] = None):
        super().__init__(message, details={"oauth_error": oauth_error} if oauth_error else None, upstream_status=upstream_status)
        self.oauth_error = oauth_error


class ValidationError(SyncError):
    code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class NotConnected(SyncError):
    code = "NOT_CONNECTED"
    http_status = status.HTTP_400_BAD_REQUEST


class ConfigRequired(SyncError):
    code = "CONFIG_REQUIRED"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFound(SyncError):
    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class PartialFetchFailure(SyncError):
    """One fetch unit failed while its siblings succeeded. Reported inside results, not raised to HTTP."""

    code = "PARTIAL_FETCH_FAILURE"
    http_status = status.HTTP_200_OK


def error_code_of(exc: BaseException) -> str:
    """Stable code for any exception, used when recording per-unit failures."""
    if isinstance(exc, SyncError):
        return exc.code
    return "INTERNAL"
