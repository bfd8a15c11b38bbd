from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from src.sync.models import AggregateResult

T = TypeVar("T")


class ErrorResponse(BaseModel):
    """Standardized error payload for all endpoints."""
    status: str = Field("error", description="Error status, always 'error'")
    code: str = Field(..., description="Machine-readable error code (e.g., AUTH_REVOKED, RATE_LIMITED, VALIDATION_ERROR, UPSTREAM_ERROR)")
    message: str = Field(..., description="Human-readable description of the error")
    retry_after: Optional[float] = Field(default=None, description="Seconds to wait before retrying (for rate limiting)")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional structured, safe-to-log error details")
    http_status: Optional[int] = Field(default=None, description="HTTP status observed from upstream")
    requires_reauth: Optional[bool] = Field(default=None, description="True when the provider connection must be re-authorized")


class OAuthLogin(BaseModel):
    """Response body for starting OAuth flow."""
    auth_url: str = Field(..., description="URL to redirect user to start OAuth flow")
    state: Optional[str] = Field(default=None, description="Opaque state value to validate callback")


class ConnectionStatusModel(BaseModel):
    """Per-tenant connection status surfaced on /status and GET /connectors."""
    connected: bool = Field(..., description="True if the provider is linked for this tenant")
    needs_reauth: bool = Field(default=False, description="True when the user has to reconnect")
    last_synced: Optional[datetime] = Field(default=None, description="Last successful live aggregate run")
    token_expiry: Optional[datetime] = Field(default=None, description="Access token expiry (UTC)")
    last_refreshed: Optional[datetime] = Field(default=None, description="When tokens were last refreshed or linked")
    realm_id: Optional[str] = Field(default=None, description="Selected location id or company realm id")
    entity_name: Optional[str] = Field(default=None, description="Display name of the location or company")
    last_error: Optional[str] = Field(default=None, description="Last error recorded for the connection")
    scopes: List[str] = Field(default_factory=list, description="Granted scopes")


class ConnectorListItemModel(BaseModel):
    """Provider descriptor merged with per-tenant status."""
    id: str = Field(..., description="Provider id")
    name: str = Field(..., description="Provider name")
    tags: List[str] = Field(default_factory=list, description="Tags/categories")
    status: ConnectionStatusModel = Field(..., description="Per-tenant connection status")


class SelectLocationModel(BaseModel):
    """Payload to pick the Business Profile location used for a tenant's insights."""
    location_id: str = Field(..., description="Location id or resource name (locations/{id})")
    location_name: Optional[str] = Field(default=None, description="Display name of the location")


class CustomerMappingCreateModel(BaseModel):
    """Payload to link a portal customer to a QuickBooks customer."""
    portal_customer_id: str = Field(..., description="Customer id in the portal")
    quickbooks_customer_id: str = Field(..., description="QuickBooks Customer.Id")
    quickbooks_customer_display_name: Optional[str] = Field(default=None, description="QuickBooks display name")


class ItemList(BaseModel, Generic[T]):
    """Plain list wrapper."""
    items: List[T] = Field(default_factory=list, description="List of items")
    total: int = Field(0, description="Number of items")


class ConnectResult(BaseModel):
    connected: Optional[bool] = Field(default=None, description="True once the OAuth callback linked the provider")
    disconnected: Optional[bool] = Field(default=None, description="True if the connection was removed")
    realm_id: Optional[str] = Field(default=None, description="Company realm id reported on callback")


class RefreshResult(BaseModel):
    expires_at: Optional[datetime] = Field(default=None, description="New access token expiry (UTC)")


class BulkRefreshReport(BaseModel):
    total: int = Field(..., description="Connections considered")
    refreshed: int = Field(..., description="Connections refreshed successfully")
    failed: int = Field(..., description="Connections that failed")
    results: List[Dict[str, Any]] = Field(default_factory=list, description="Per-tenant outcome")


class GroupInsightsSummary(BaseModel):
    total_locations: int
    successful_fetches: int
    failed_fetches: int


class GroupInsights(BaseModel):
    account: Optional[str] = Field(default=None, description="Location-group account name")
    period: Dict[str, Any] = Field(default_factory=dict, description="Resolved period")
    locations: List[Dict[str, Any]] = Field(default_factory=list, description="Per-location summary or error")
    summary: GroupInsightsSummary


class SuccessResponse(BaseModel, Generic[T]):
    """Standardized success payload wrapper."""
    status: str = Field("ok", description="Success status, always 'ok'")
    data: T = Field(..., description="Response data")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata associated with the response")


# Convenience alias types for commonly returned shapes

class OAuthLoginSuccess(SuccessResponse[OAuthLogin]):  # type: ignore[type-arg]
    pass


class ConnectSuccess(SuccessResponse[ConnectResult]):  # type: ignore[type-arg]
    pass


class RefreshSuccess(SuccessResponse[RefreshResult]):  # type: ignore[type-arg]
    pass


class StatusSuccess(SuccessResponse[ConnectionStatusModel]):  # type: ignore[type-arg]
    pass


class ConnectorListSuccess(SuccessResponse[List[ConnectorListItemModel]]):  # type: ignore[type-arg]
    pass


class AggregateSuccess(SuccessResponse[AggregateResult]):  # type: ignore[type-arg]
    pass


class BulkRefreshSuccess(SuccessResponse[BulkRefreshReport]):  # type: ignore[type-arg]
    pass


class GroupInsightsSuccess(SuccessResponse[GroupInsights]):  # type: ignore[type-arg]
    pass


class ItemsSuccess(SuccessResponse[ItemList[Dict[str, Any]]]):  # type: ignore[type-arg]
    pass
