from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, Path, Query
from fastapi.responses import RedirectResponse

from src.connectors.base import BaseConnector, status_from_credential
from src.core.api_models import (
    AggregateSuccess,
    BulkRefreshSuccess,
    ConnectorListItemModel,
    ConnectorListSuccess,
    ConnectSuccess,
    OAuthLoginSuccess,
    RefreshSuccess,
    StatusSuccess,
)
from src.core.errors import NotFound, SyncError, ValidationError
from src.core.logging import get_logger
from src.core.observability import bind_provider
from src.core.response import ok
from src.core.security import verify_oauth_state
from src.core.settings import get_settings
from src.core.tenants import get_tenant_id
from src.core.token_store import CredentialStore
from src.sync.jobs import refresh_all_aggregates, refresh_expiring_tokens

logger = get_logger(__name__)


ConnectorFactory = Callable[[str], BaseConnector]


def _frontend_redirect(frontend_url: str, provider: str, **params: str) -> RedirectResponse:
    return RedirectResponse(f"{frontend_url.rstrip('/')}/admin/{provider}?{urlencode(params)}", status_code=302)


class ConnectorRegistry:
    """In-memory registry of provider connectors."""

    def __init__(self):
        self._connectors: Dict[str, Dict[str, Any]] = {}

    # PUBLIC_INTERFACE
    def register(self, connector_id: str, name: str, factory: ConnectorFactory, router: Optional[APIRouter] = None, tags: Optional[List[str]] = None):
        """Register a connector with a factory and optional APIRouter."""
        self._connectors[connector_id] = {
            "id": connector_id,
            "name": name,
            "factory": factory,
            "router": router,
            "tags": tags or [],
        }

    # PUBLIC_INTERFACE
    def get_factory(self, connector_id: str) -> ConnectorFactory:
        item = self._connectors.get(connector_id)
        if not item:
            raise NotFound(f"Unknown provider '{connector_id}'", details={"provider": connector_id})
        return item["factory"]

    # PUBLIC_INTERFACE
    def connector(self, connector_id: str, tenant_id: str) -> BaseConnector:
        connector = self.get_factory(connector_id)(tenant_id)
        bind_provider(connector_id)
        return connector

    # PUBLIC_INTERFACE
    def providers(self) -> List[str]:
        return list(self._connectors)

    def _list_with_status(self, tenant_id: str) -> List[ConnectorListItemModel]:
        store = CredentialStore()
        return [
            ConnectorListItemModel(
                id=v["id"],
                name=v["name"],
                tags=v.get("tags", []),
                status=status_from_credential(store.get(tenant_id, v["id"])),
            )
            for v in self._connectors.values()
        ]

    # PUBLIC_INTERFACE
    async def refresh_expiring_tokens(self) -> Dict[str, Dict[str, int]]:
        """One background refresh round across every provider."""
        out: Dict[str, Dict[str, int]] = {}
        for provider in self.providers():
            factory = self.get_factory(provider)
            out[provider] = await refresh_expiring_tokens(provider, manager_for=lambda t, f=factory: f(t).token_manager())
        return out

    # PUBLIC_INTERFACE
    def mount_all(self, app: FastAPI, prefix: str = "/connectors"):
        """Mount the common provider endpoints and every provider's own router under one prefix."""
        router = APIRouter(prefix=prefix, tags=["Connectors"])

        @router.get(
            "",
            summary="List connectors",
            description="List all providers merged with the tenant's connection status.",
            response_model=ConnectorListSuccess,  # type: ignore[type-arg]
            responses={
                200: {
                    "description": "Connectors listed",
                    "content": {
                        "application/json": {
                            "example": {
                                "status": "ok",
                                "data": [
                                    {
                                        "id": "google_business",
                                        "name": "Google Business Profile",
                                        "tags": ["Analytics"],
                                        "status": {"connected": False, "needs_reauth": False, "last_synced": None, "token_expiry": None, "realm_id": None, "scopes": []},
                                    }
                                ],
                                "meta": {},
                            }
                        }
                    },
                },
            },
        )
        def list_connectors(tenant_id: str = Depends(get_tenant_id)):
            return ok([c.model_dump(mode="json") for c in self._list_with_status(tenant_id)])

        @router.get(
            "/{provider}/connect",
            summary="Start OAuth",
            description="Return the provider authorization URL for the tenant.",
            response_model=OAuthLoginSuccess,  # type: ignore[type-arg]
            responses={
                200: {
                    "description": "Authorization URL created",
                    "content": {"application/json": {"example": {"status": "ok", "data": {"auth_url": "https://accounts.google.com/o/oauth2/v2/auth?...", "state": "bm9uY2U6..."}, "meta": {}}}},
                },
                400: {"description": "OAuth client not configured"},
                404: {"description": "Unknown provider"},
            },
        )
        async def connect(provider: str, tenant_id: str = Depends(get_tenant_id)):
            resp = await self.connector(provider, tenant_id).oauth_login()
            return ok(resp.model_dump())

        @router.get(
            "/{provider}/callback",
            summary="OAuth callback",
            description="Verify the signed state, exchange the code and store the credential. Redirects to the admin UI when FRONTEND_URL is set.",
            response_model=ConnectSuccess,  # type: ignore[type-arg]
            responses={
                200: {"description": "OAuth completed", "content": {"application/json": {"example": {"status": "ok", "data": {"connected": True, "realm_id": "9130349"}, "meta": {}}}}},
                302: {"description": "Redirect to the admin UI"},
                400: {"description": "Invalid or mismatched state"},
                502: {"description": "Token endpoint error"},
            },
        )
        async def oauth_callback(
            provider: str,
            code: Optional[str] = None,
            state: Optional[str] = None,
            realm_id: Optional[str] = Query(default=None, alias="realmId", description="QuickBooks company id"),
            error: Optional[str] = Query(default=None, description="Error reported by the provider"),
        ):
            frontend = get_settings().oauth.FRONTEND_URL
            try:
                if error:
                    raise ValidationError(f"Authorization was not granted: {error}", details={"oauth_error": error})
                if not code or not state:
                    raise ValidationError("Missing OAuth code or state")
                bound = verify_oauth_state(state)
                if bound is None or bound[1] != provider:
                    raise ValidationError("Invalid OAuth state")
                result = await self.connector(provider, bound[0]).oauth_callback(code, state, realm_id=realm_id)
            except SyncError as exc:
                if not frontend:
                    raise
                logger.warning("oauth callback failed; redirecting to admin UI", extra={"error_code": exc.code})
                return _frontend_redirect(frontend, provider, error=exc.message)
            if frontend:
                return _frontend_redirect(frontend, provider, success="true")
            return ok(result)

        @router.get(
            "/{provider}/refresh",
            summary="Force token refresh",
            response_model=RefreshSuccess,  # type: ignore[type-arg]
            responses={401: {"description": "Re-authorization required"}, 400: {"description": "Not connected"}},
        )
        async def refresh(provider: str, tenant_id: str = Depends(get_tenant_id)):
            data = await self.connector(provider, tenant_id).refresh()
            return ok({"expires_at": data["expires_at"].isoformat() if data["expires_at"] else None})

        @router.get(
            "/{provider}/status",
            summary="Connection status",
            response_model=StatusSuccess,  # type: ignore[type-arg]
        )
        def status(provider: str, tenant_id: str = Depends(get_tenant_id)):
            return ok(self.connector(provider, tenant_id).status().model_dump(mode="json"))

        @router.get(
            "/{provider}/disconnect",
            summary="Disconnect",
            description="Remove the stored tokens for the tenant.",
            response_model=ConnectSuccess,  # type: ignore[type-arg]
        )
        async def disconnect(provider: str, tenant_id: str = Depends(get_tenant_id)):
            return ok(await self.connector(provider, tenant_id).disconnect())

        @router.get(
            "/{provider}/insights/{tenant_id}",
            summary="Insights",
            description="Aggregated metrics for a period, served from cache while fresh.",
            response_model=AggregateSuccess,  # type: ignore[type-arg]
            responses={
                400: {"description": "Invalid range, not connected or no location/company configured"},
                401: {"description": "Re-authorization required"},
                502: {"description": "Upstream error"},
                503: {"description": "Rate limited"},
            },
        )
        async def insights(
            provider: str,
            tenant_id: str = Path(..., description="Tenant whose aggregate is requested"),
            start: Optional[str] = Query(default=None, description="YYYY-MM-DD"),
            end: Optional[str] = Query(default=None, description="YYYY-MM-DD, clipped to the latest available day"),
            days: Optional[int] = Query(default=None, description="Period length when no explicit range is given"),
            compare: bool = Query(default=False, description="Include the previous period of equal length"),
            force_refresh: bool = Query(default=False, alias="forceRefresh", description="Bypass the cache"),
        ):
            result = await self.connector(provider, tenant_id).insights(start=start, end=end, days=days, compare=compare, force_refresh=force_refresh)
            return ok(result.model_dump(mode="json"), meta={"source": result.source})

        @router.post(
            "/{provider}/manual-refresh/{tenant_id}",
            summary="Manual refresh",
            description="Delete every cached aggregate of the tenant and recompute the rolling window.",
            response_model=AggregateSuccess,  # type: ignore[type-arg]
        )
        async def manual_refresh(provider: str, tenant_id: str = Path(...)):
            result = await self.connector(provider, tenant_id).manual_refresh()
            return ok(result.model_dump(mode="json"), meta={"source": result.source})

        @router.post(
            "/{provider}/manual-refresh-all",
            summary="Manual refresh for all tenants",
            response_model=BulkRefreshSuccess,  # type: ignore[type-arg]
        )
        async def manual_refresh_all(provider: str):
            factory = self.get_factory(provider)
            bind_provider(provider)
            report = await refresh_all_aggregates(provider, service_for=lambda t: factory(t).insights_service())
            return ok(report)

        app.include_router(router)

        # Mount sub-routers for provider-specific endpoints if provided
        for item in self._connectors.values():
            sub_router: Optional[APIRouter] = item.get("router")
            if sub_router is not None:
                app.include_router(sub_router, prefix=f"{prefix}/{item['id']}", tags=[item["name"]])
