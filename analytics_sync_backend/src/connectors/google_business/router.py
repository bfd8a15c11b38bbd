from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from src.connectors.base import BaseConnector
from src.connectors.oauth import OAuthClient
from src.core.api_models import GroupInsightsSuccess, ItemsSuccess, SelectLocationModel, StatusSuccess
from src.core.errors import AuthRevoked, ConfigRequired, NotConnected
from src.core.logging import get_logger
from src.core.response import ok
from src.core.tenants import get_tenant_id
from src.core.token_lifecycle import credential_lock
from src.sync.fetcher import ConcurrencyLimitedFetcher
from src.sync.pipeline import SyncPipeline
from .client import GoogleBusinessClient
from .mapping import location_id, map_account, map_location
from .source import GoogleBusinessSource

logger = get_logger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPES = ["https://www.googleapis.com/auth/business.manage"]


class GoogleBusinessConnector(BaseConnector):
    id = "google_business"
    name = "Google Business Profile"
    uses_pkce = True

    def oauth_client(self) -> OAuthClient:
        oauth = self.settings.oauth
        return OAuthClient(
            authorize_url=AUTHORIZE_URL,
            token_url=TOKEN_URL,
            client_id=oauth.GOOGLE_BUSINESS_CLIENT_ID or "",
            client_secret=oauth.GOOGLE_BUSINESS_CLIENT_SECRET,
            redirect_uri=oauth.GOOGLE_BUSINESS_REDIRECT_URI or "",
            scopes=SCOPES,
            client_auth="body",
            # offline + consent so Google issues a refresh token on every link
            extra_authorize_params={"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"},
            timeout=self.settings.sync.HTTP_TIMEOUT_SECONDS,
        )

    def metrics_source(self) -> GoogleBusinessSource:
        return GoogleBusinessSource(timeout=self.settings.sync.HTTP_TIMEOUT_SECONDS)

    def _client(self, token: str) -> GoogleBusinessClient:
        return GoogleBusinessClient(token, timeout=self.settings.sync.HTTP_TIMEOUT_SECONDS)

    # PUBLIC_INTERFACE
    async def list_locations(self) -> List[Dict[str, Any]]:
        """Accounts visible to the credential, each with its locations."""
        manager = self.token_manager()
        manager.require_connected()
        accounts = await self.api_call(lambda token: self._client(token).list_accounts(), manager)
        out: List[Dict[str, Any]] = []
        for account in accounts:
            name = account.get("name")
            if not name:
                continue
            raw_locations = await self.api_call(lambda token, n=name: self._client(token).list_locations(n), manager)
            out.append({**map_account(account), "locations": [map_location(loc, name) for loc in raw_locations]})
        return out

    # PUBLIC_INTERFACE
    async def select_location(self, payload: SelectLocationModel):
        """Point the tenant's insights at a location; cached aggregates of the old one are dropped."""
        manager = self.token_manager()
        async with credential_lock(self.tenant_id, self.id):
            cred = manager.require_connected()
            cred.realm_id = location_id(payload.location_id)
            cred.entity_name = payload.location_name
            self.store.save(cred)
        self.insights_service().cache.invalidate(self.tenant_id, self.id)
        logger.info("location selected", extra={"location_id": cred.realm_id})
        return self.status()

    async def _group_account(self, manager) -> Dict[str, Any]:
        accounts = await self.api_call(lambda token: self._client(token).list_accounts(), manager)
        groups = [a for a in accounts if a.get("type") == "LOCATION_GROUP"]
        wanted = self.settings.oauth.GOOGLE_BUSINESS_GROUP_NAME
        if wanted:
            groups = [a for a in groups if a.get("accountName") == wanted]
        if not groups:
            raise ConfigRequired("No Google Business location group account is available for this connection.")
        return groups[0]

    # PUBLIC_INTERFACE
    async def group_insights(self, days: Optional[int] = None) -> Dict[str, Any]:
        """Insights for every location of the location-group account.

        Locations run through their own worker pool; one failing location is reported in its
        row and does not affect the others.
        """
        manager = self.token_manager()
        manager.require_connected()
        period = self.insights_service().resolve(None, None, days)
        group = await self._group_account(manager)
        raw_locations = await self.api_call(lambda token: self._client(token).list_locations(group["name"]), manager)
        locations = [map_location(loc, group["name"]) for loc in raw_locations if loc.get("name")]

        sync = self.settings.sync
        pipeline = SyncPipeline(self.metrics_source(), manager)
        fetcher = ConcurrencyLimitedFetcher(
            concurrency=sync.GROUP_CONCURRENCY,
            delay=sync.INTER_BATCH_DELAY_MS / 1000.0,
            fatal=(AuthRevoked, NotConnected),
        )
        report = await fetcher.fetch_all(locations, lambda loc: pipeline.run(loc["id"], period.start, period.end))

        rows: List[Dict[str, Any]] = []
        for outcome in report.outcomes:
            loc = outcome.unit
            if outcome.ok:
                result = outcome.result
                rows.append(
                    {
                        "location_id": loc["id"],
                        "location_name": loc["title"],
                        "summary": result.summary,  # type: ignore[union-attr]
                        "complete": result.complete,  # type: ignore[union-attr]
                    }
                )
            else:
                rows.append({"location_id": loc["id"], "location_name": loc["title"], "error": True, "error_message": str(outcome.error)})
        return {
            "account": group.get("accountName"),
            "period": {"start": period.start.isoformat(), "end": period.end.isoformat(), "days": period.days},
            "locations": rows,
            "summary": {
                "total_locations": len(locations),
                "successful_fetches": len(report.successes),
                "failed_fetches": len(report.failures),
            },
        }


def get_router() -> APIRouter:
    """Google Business specific endpoints: location discovery, selection and group insights."""
    router = APIRouter()

    @router.get(
        "/locations",
        summary="List locations",
        description="Accounts and locations the connected Google account can see.",
        response_model=ItemsSuccess,  # type: ignore[type-arg]
        responses={
            200: {"description": "Accounts with locations", "content": {"application/json": {"example": {"status": "ok", "data": {"items": [{"name": "accounts/1", "account_name": "Clinic", "type": "PERSONAL", "locations": [{"id": "123", "name": "locations/123", "title": "Main St", "account": "accounts/1"}]}], "total": 1}, "meta": {}}}}},
            400: {"description": "Not connected"},
            401: {"description": "Re-authorization required"},
            502: {"description": "Upstream error"},
        },
    )
    async def list_locations(tenant_id: str = Depends(get_tenant_id)):
        items = await GoogleBusinessConnector(tenant_id).list_locations()
        return ok({"items": items, "total": len(items)}, meta={"source": "google_business"})

    @router.post(
        "/location",
        summary="Select location",
        description="Select the location whose metrics feed this tenant's insights.",
        response_model=StatusSuccess,  # type: ignore[type-arg]
        responses={400: {"description": "Not connected"}},
    )
    async def select_location(payload: SelectLocationModel, tenant_id: str = Depends(get_tenant_id)):
        status = await GoogleBusinessConnector(tenant_id).select_location(payload)
        return ok(status.model_dump(mode="json"))

    @router.get(
        "/group-insights",
        summary="Group insights",
        description="Summaries for every location of the location-group account; per-location failures are reported inline.",
        response_model=GroupInsightsSuccess,  # type: ignore[type-arg]
        responses={
            400: {"description": "Not connected or no location group"},
            401: {"description": "Re-authorization required"},
        },
    )
    async def group_insights(tenant_id: str = Depends(get_tenant_id), days: Optional[int] = Query(default=None, ge=1, description="Period length in days")):
        data = await GoogleBusinessConnector(tenant_id).group_insights(days=days)
        return ok(data)

    return router


def factory(tenant_id: str) -> GoogleBusinessConnector:
    return GoogleBusinessConnector(tenant_id)
