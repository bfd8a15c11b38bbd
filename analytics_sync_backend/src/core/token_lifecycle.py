from __future__ import annotations

import asyncio
import functools
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Optional, Protocol, Tuple, TypeVar

from src.connectors.oauth import TokenGrant
from src.core.errors import AuthExpired, AuthRevoked, ConfigRequired, NotConnected, SyncError, TokenEndpointError
from src.core.logging import get_logger
from src.core.models import ConnectionCredential
from src.core.observability import increment_metric, mask_secret_value
from src.core.retry import retry_async
from src.core.security import compute_expiry, is_expired
from src.core.settings import get_settings
from src.core.token_store import CredentialStore

logger = get_logger(__name__)

T = TypeVar("T")

Classification = Literal["permanent", "transient"]

PERMANENT_OAUTH_ERRORS = (
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "invalid_refresh_token",
    "refresh_token_expired",
    "access_denied",
)


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenGrant: ...


@dataclass
class RefreshOutcome:
    success: bool
    new_access_token: Optional[str]
    new_refresh_token: Optional[str]
    expires_at: Optional[datetime]
    classification: Optional[Classification] = None


# PUBLIC_INTERFACE
def classify_refresh_error(exc: BaseException) -> Classification:
    """Permanent errors need the user to re-authorize; everything else is worth retrying later."""
    if isinstance(exc, AuthRevoked):
        return "permanent"
    if isinstance(exc, TokenEndpointError):
        text = f"{exc.oauth_error or ''} {exc.message}".lower()
        if any(code in text for code in PERMANENT_OAUTH_ERRORS):
            return "permanent"
    return "transient"


# entries live only while some coroutine holds or awaits the lock
_LOCKS: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()


def credential_lock(tenant_id: str, provider: str) -> asyncio.Lock:
    """One lock per credential so concurrent requests cannot race each other into a refresh."""
    key = (tenant_id, provider)
    lock = _LOCKS.get(key)
    if lock is None:
        lock = _LOCKS[key] = asyncio.Lock()
    return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Keeps one tenant's provider credential valid.

    States: Disconnected -> Connected-Valid -> Connected-ExpiringSoon -> Connected-Valid
    (refresh ok) or Connected-NeedsReauth (permanent refresh failure). ``disconnect`` returns
    any state to Disconnected.
    """

    def __init__(
        self,
        tenant_id: str,
        provider: str,
        oauth: TokenRefresher,
        store: Optional[CredentialStore] = None,
        buffer_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        sync = get_settings().sync
        self.tenant_id = tenant_id
        self.provider = provider
        self.oauth = oauth
        self.store = store or CredentialStore()
        self.buffer_seconds = sync.TOKEN_REFRESH_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
        self.retry_attempts = sync.RETRY_ATTEMPTS
        self.retry_base_delay = sync.RETRY_BASE_DELAY_MS / 1000.0
        self.retry_max_delay = sync.RETRY_MAX_DELAY_MS / 1000.0
        self._clock = clock or _utcnow
        self._sleep = sleep

    def _load_usable(self) -> ConnectionCredential:
        cred = self.store.get(self.tenant_id, self.provider)
        if cred is not None and cred.needs_reauth:
            raise AuthRevoked(f"{self.provider} connection needs to be re-authorized.")
        if cred is None or not cred.connected:
            raise NotConnected(f"{self.provider} is not connected for this tenant.")
        return cred

    def _is_fresh(self, cred: ConnectionCredential) -> bool:
        return bool(cred.access_token) and not is_expired(cred.expires_at, now=self._clock(), buffer_seconds=self.buffer_seconds)

    # PUBLIC_INTERFACE
    def require_connected(self, entity_label: Optional[str] = None) -> ConnectionCredential:
        """Pre-checks without any network call.

        Raises AuthRevoked when re-authorization is pending, NotConnected when there is no
        usable connection and, when ``entity_label`` is given, ConfigRequired if no
        location or company has been selected yet.
        """
        cred = self._load_usable()
        if entity_label and not cred.realm_id:
            raise ConfigRequired(f"No {self.provider} {entity_label} configured for this tenant.")
        return cred

    # PUBLIC_INTERFACE
    async def get_valid_access_token(self) -> str:
        """Return an access token that stays valid for at least the buffer, refreshing if needed."""
        cred = self._load_usable()
        if self._is_fresh(cred):
            return cred.access_token  # type: ignore[return-value]
        outcome = await self.refresh(observed_access_token=cred.access_token)
        return outcome.new_access_token  # type: ignore[return-value]

    # PUBLIC_INTERFACE
    async def refresh(self, force: bool = False, observed_access_token: Optional[str] = None) -> RefreshOutcome:
        """Refresh under the credential lock.

        After the lock is acquired the credential is re-read: when another task already
        replaced the token the caller saw, that token is returned instead of refreshing twice.
        """
        async with credential_lock(self.tenant_id, self.provider):
            cred = self._load_usable()
            refreshed_meanwhile = observed_access_token is not None and cred.access_token != observed_access_token
            if self._is_fresh(cred) and (not force or refreshed_meanwhile):
                return RefreshOutcome(True, cred.access_token, None, cred.expires_at)
            return await self._refresh_locked(cred)

    async def _refresh_locked(self, cred: ConnectionCredential) -> RefreshOutcome:
        if not cred.refresh_token:
            self._revoke(cred, "No refresh token available")
        refresh_token: str = cred.refresh_token  # type: ignore[assignment]
        increment_metric("token_refresh_total", 1.0)
        try:
            grant = await retry_async(
                lambda: self.oauth.refresh(refresh_token),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                sleep=self._sleep,
            )
        except SyncError as exc:
            increment_metric("token_refresh_failures_total", 1.0)
            if classify_refresh_error(exc) == "permanent":
                self._revoke(cred, exc.message, cause=exc)
            logger.warning("transient token refresh failure; connection left untouched", extra={"error_code": exc.code})
            raise

        now = self._clock()
        cred.access_token = grant.access_token
        if grant.refresh_token:
            cred.refresh_token = grant.refresh_token
        else:
            logger.info("provider did not rotate the refresh token; keeping the stored one")
        cred.expires_at = compute_expiry(grant.expires_in, now=now)
        if grant.refresh_token_expires_in:
            cred.refresh_token_expires_at = compute_expiry(grant.refresh_token_expires_in, now=now)
        if grant.scope:
            cred.scope = grant.scope
        cred.last_refreshed = now
        cred.last_error = None
        self.store.save(cred)
        logger.info("token refreshed", extra={"access_token": mask_secret_value(grant.access_token), "expires_at": cred.expires_at.isoformat()})
        return RefreshOutcome(True, grant.access_token, grant.refresh_token, cred.expires_at)

    def _revoke(self, cred: ConnectionCredential, reason: str, cause: Optional[BaseException] = None) -> None:
        cred.connected = False
        cred.needs_reauth = True
        cred.last_error = reason
        self.store.save(cred)
        logger.warning("permanent token failure; connection flagged for re-authorization", extra={"reason": reason})
        raise AuthRevoked(f"{self.provider} token refresh failed permanently. Please reconnect.", details={"reason": reason}) from cause

    # PUBLIC_INTERFACE
    async def wrap_call(self, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run operation(token); on a 401 force one refresh and retry exactly once."""
        token = await self.get_valid_access_token()
        try:
            return await operation(token)
        except AuthExpired:
            logger.info("provider rejected access token; forcing a refresh and retrying once")
        outcome = await self.refresh(force=True, observed_access_token=token)
        try:
            return await operation(outcome.new_access_token)  # type: ignore[arg-type]
        except AuthExpired as exc:
            raise AuthRevoked(
                f"{self.provider} rejected a freshly refreshed token. Please reconnect.",
                upstream_status=exc.upstream_status,
            ) from exc

    # PUBLIC_INTERFACE
    async def store_grant(self, grant: TokenGrant, realm_id: Optional[str] = None) -> ConnectionCredential:
        """Persist the tokens of a completed authorization: Disconnected -> Connected-Valid."""
        async with credential_lock(self.tenant_id, self.provider):
            existing = self.store.get(self.tenant_id, self.provider)
            cred = existing or ConnectionCredential(tenant_id=self.tenant_id, provider=self.provider)  # type: ignore[arg-type]
            refresh_token = grant.refresh_token or cred.refresh_token
            if not refresh_token:
                raise TokenEndpointError("Provider did not return a refresh token; reconnect and grant offline access.", oauth_error="missing_refresh_token")
            now = self._clock()
            cred.access_token = grant.access_token
            cred.refresh_token = refresh_token
            cred.expires_at = compute_expiry(grant.expires_in, now=now)
            cred.refresh_token_expires_at = compute_expiry(grant.refresh_token_expires_in, now=now) if grant.refresh_token_expires_in else None
            cred.scope = grant.scope or cred.scope
            cred.realm_id = realm_id or grant.realm_id or cred.realm_id
            cred.connected = True
            cred.needs_reauth = False
            cred.last_refreshed = now
            cred.last_error = None
            cred.oauth_session = None
            self.store.save(cred)
            return cred

    # PUBLIC_INTERFACE
    async def disconnect(self) -> bool:
        """Null the credential fields. Returns False when there was nothing stored."""
        async with credential_lock(self.tenant_id, self.provider):
            cred = self.store.get(self.tenant_id, self.provider)
            if cred is None:
                return False
            cred.access_token = None
            cred.refresh_token = None
            cred.expires_at = None
            cred.refresh_token_expires_at = None
            cred.connected = False
            cred.needs_reauth = False
            cred.last_error = None
            cred.oauth_session = None
            self.store.save(cred)
            return True


# PUBLIC_INTERFACE
def with_token_retry(manager: TokenLifecycleManager):
    """Decorator form of ``wrap_call``: the wrapped coroutine receives the token as first argument."""

    def decorator(operation: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(operation)
        async def wrapper(*args, **kwargs) -> T:
            return await manager.wrap_call(lambda token: operation(token, *args, **kwargs))

        return wrapper

    return decorator
