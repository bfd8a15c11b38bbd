from __future__ import annotations

import hmac
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from src.connectors.oauth import OAuthClient
from src.core.api_models import ConnectionStatusModel, OAuthLogin
from src.core.errors import ConfigRequired, ValidationError
from src.core.logging import get_logger
from src.core.models import ConnectionCredential, OAuthSession
from src.core.retry import retry_async
from src.core.security import generate_oauth_state, generate_pkce
from src.core.settings import get_settings
from src.core.token_lifecycle import TokenLifecycleManager
from src.core.token_store import CredentialStore
from src.sync.models import AggregateResult
from src.sync.service import InsightsService
from src.sync.source import MetricsSource

logger = get_logger(__name__)

T = TypeVar("T")


# PUBLIC_INTERFACE
def status_from_credential(cred: Optional[ConnectionCredential]) -> ConnectionStatusModel:
    """Map a stored credential (or its absence) to ConnectionStatusModel."""
    if cred is None:
        return ConnectionStatusModel(connected=False)
    return ConnectionStatusModel(
        connected=cred.connected,
        needs_reauth=cred.needs_reauth,
        last_synced=cred.last_synced,
        token_expiry=cred.expires_at if cred.connected else None,
        last_refreshed=cred.last_refreshed,
        realm_id=cred.realm_id,
        entity_name=cred.entity_name,
        last_error=cred.last_error,
        scopes=[s for s in (cred.scope or "").split(" ") if s],
    )


# PUBLIC_INTERFACE
class BaseConnector(ABC):
    """Abstract base class for provider connectors.

    Subclasses supply the OAuth client and the metrics source; the OAuth flow, token
    lifecycle, status and insights operations are shared.
    """

    id: str
    name: str
    uses_pkce: bool = False

    def __init__(self, tenant_id: str, store: Optional[CredentialStore] = None):
        self.tenant_id = tenant_id
        self.settings = get_settings()
        self.store = store or CredentialStore()

    # PUBLIC_INTERFACE
    @abstractmethod
    def oauth_client(self) -> OAuthClient:
        """OAuth client configured with this provider's endpoints and app credentials."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    def metrics_source(self) -> MetricsSource:
        raise NotImplementedError

    def _require_client_config(self, client: OAuthClient) -> None:
        if not client.client_id or not client.redirect_uri:
            raise ConfigRequired(f"{self.name} OAuth client is not configured.")

    # PUBLIC_INTERFACE
    def token_manager(self) -> TokenLifecycleManager:
        return TokenLifecycleManager(self.tenant_id, self.id, self.oauth_client(), store=self.store)

    # PUBLIC_INTERFACE
    def insights_service(self) -> InsightsService:
        return InsightsService(self.tenant_id, self.metrics_source(), self.token_manager())

    # PUBLIC_INTERFACE
    async def oauth_login(self) -> OAuthLogin:
        """Build the consent URL and remember the pending session (state, PKCE verifier)."""
        client = self.oauth_client()
        self._require_client_config(client)
        state = generate_oauth_state(self.tenant_id, self.id)
        pkce = generate_pkce() if self.uses_pkce else None
        session = OAuthSession(state=state, code_verifier=pkce.verifier if pkce else None, created_at=datetime.now(timezone.utc))
        self.store.start_session(self.tenant_id, self.id, session)
        return OAuthLogin(auth_url=client.authorization_url(state, pkce.challenge if pkce else None), state=state)

    # PUBLIC_INTERFACE
    async def oauth_callback(self, code: str, state: str, realm_id: Optional[str] = None) -> Dict[str, Any]:
        """Exchange the authorization code and persist the credential. Do not log secrets.

        The state signature was already checked by the route; here it must also equal the
        copy stored by ``oauth_login`` for this tenant.
        """
        cred = self.store.get(self.tenant_id, self.id)
        session = cred.oauth_session if cred else None
        if session is None or not hmac.compare_digest(session.state, state):
            raise ValidationError("OAuth state mismatch")
        grant = await self.oauth_client().exchange_code(code, code_verifier=session.code_verifier)
        linked = await self.token_manager().store_grant(grant, realm_id=realm_id)
        logger.info("provider connected", extra={"realm_id": linked.realm_id})
        return {"connected": True, "realm_id": linked.realm_id}

    # PUBLIC_INTERFACE
    async def refresh(self) -> Dict[str, Any]:
        outcome = await self.token_manager().refresh(force=True)
        return {"expires_at": outcome.expires_at}

    # PUBLIC_INTERFACE
    def status(self) -> ConnectionStatusModel:
        return status_from_credential(self.store.get(self.tenant_id, self.id))

    # PUBLIC_INTERFACE
    async def disconnect(self) -> Dict[str, Any]:
        await self.token_manager().disconnect()
        return {"disconnected": True}

    # PUBLIC_INTERFACE
    async def insights(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        days: Optional[int] = None,
        compare: bool = False,
        force_refresh: bool = False,
    ) -> AggregateResult:
        return await self.insights_service().get_insights(start=start, end=end, days=days, compare=compare, force_refresh=force_refresh)

    # PUBLIC_INTERFACE
    async def manual_refresh(self) -> AggregateResult:
        return await self.insights_service().manual_refresh()

    # PUBLIC_INTERFACE
    async def api_call(self, operation: Callable[[str], Awaitable[T]], manager: Optional[TokenLifecycleManager] = None) -> T:
        """Run a provider API call with a valid token, the 401 retry and transient backoff."""
        manager = manager or self.token_manager()
        sync = self.settings.sync

        async def attempt(token: str) -> T:
            return await retry_async(
                lambda: operation(token),
                attempts=sync.RETRY_ATTEMPTS,
                base_delay=sync.RETRY_BASE_DELAY_MS / 1000.0,
                max_delay=sync.RETRY_MAX_DELAY_MS / 1000.0,
            )

        return await manager.wrap_call(attempt)
