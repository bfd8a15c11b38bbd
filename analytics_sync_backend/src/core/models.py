from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


ProviderType = Literal["google_business", "quickbooks"]


class OAuthSession(BaseModel):
    """Pending authorization started by /connect and consumed by /callback."""
    state: str = Field(..., description="Signed state sent to the provider")
    code_verifier: Optional[str] = Field(default=None, description="PKCE verifier, when the provider uses PKCE")
    created_at: Optional[datetime] = Field(default=None)


class ConnectionCredential(BaseModel):
    """A tenant's OAuth connection to one provider. Tokens are plaintext here; the store encrypts them."""
    tenant_id: str = Field(..., description="Tenant scope")
    provider: ProviderType = Field(..., description="Provider id")
    access_token: Optional[str] = Field(default=None, description="Current access token")
    refresh_token: Optional[str] = Field(default=None, description="Long-lived refresh token")
    expires_at: Optional[datetime] = Field(default=None, description="Absolute access token expiry (UTC)")
    refresh_token_expires_at: Optional[datetime] = Field(default=None, description="Refresh token expiry when reported")
    scope: Optional[str] = Field(default=None, description="Granted scope string")
    connected: bool = Field(default=False)
    needs_reauth: bool = Field(default=False)
    realm_id: Optional[str] = Field(default=None, description="Provider location id or company realm id")
    entity_name: Optional[str] = Field(default=None, description="Display name of the location or company")
    last_refreshed: Optional[datetime] = Field(default=None)
    last_synced: Optional[datetime] = Field(default=None)
    last_error: Optional[str] = Field(default=None)
    oauth_session: Optional[OAuthSession] = Field(default=None)


class CustomerMapping(BaseModel):
    """Links a portal customer to a QuickBooks customer."""
    id: str = Field(..., description="Mapping id")
    portal_customer_id: str = Field(..., description="Customer id in the portal")
    quickbooks_customer_id: str = Field(..., description="QuickBooks Customer.Id")
    quickbooks_customer_display_name: Optional[str] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)
