from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from src.connectors.base import BaseConnector
from src.connectors.oauth import OAuthClient
from src.core.api_models import CustomerMappingCreateModel, ItemsSuccess, SuccessResponse
from src.core.errors import NotFound
from src.core.logging import get_logger
from src.core.models import CustomerMapping
from src.core.response import ok
from src.core.tenants import get_tenant_id
from .client import QuickBooksClient
from .customer_mappings import CustomerMappingStore
from .mapping import normalize_customer, normalize_invoice
from .source import QuickBooksSource

logger = get_logger(__name__)

AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
SCOPES = ["com.intuit.quickbooks.accounting"]


class QuickBooksConnector(BaseConnector):
    id = "quickbooks"
    name = "QuickBooks Online"

    def oauth_client(self) -> OAuthClient:
        oauth = self.settings.oauth
        return OAuthClient(
            authorize_url=AUTHORIZE_URL,
            token_url=TOKEN_URL,
            client_id=oauth.QUICKBOOKS_CLIENT_ID or "",
            client_secret=oauth.QUICKBOOKS_CLIENT_SECRET,
            redirect_uri=oauth.QUICKBOOKS_REDIRECT_URI or "",
            scopes=SCOPES,
            client_auth="basic",
            timeout=self.settings.sync.HTTP_TIMEOUT_SECONDS,
        )

    def metrics_source(self) -> QuickBooksSource:
        return QuickBooksSource(base_url=self.settings.oauth.QUICKBOOKS_API_BASE, timeout=self.settings.sync.HTTP_TIMEOUT_SECONDS)

    def mappings(self) -> CustomerMappingStore:
        return CustomerMappingStore(self.tenant_id)

    async def _company_call(self, operation):
        manager = self.token_manager()
        realm_id = manager.require_connected(entity_label="company").realm_id
        base_url = self.settings.oauth.QUICKBOOKS_API_BASE
        timeout = self.settings.sync.HTTP_TIMEOUT_SECONDS
        return await self.api_call(
            lambda token: operation(QuickBooksClient(token, realm_id, base_url=base_url, timeout=timeout)),  # type: ignore[arg-type]
            manager,
        )

    # PUBLIC_INTERFACE
    async def list_customers(self) -> List[Dict[str, Any]]:
        raw = await self._company_call(lambda client: client.customers())
        return [normalize_customer(c) for c in raw]

    # PUBLIC_INTERFACE
    async def customer_invoices(self, quickbooks_customer_id: str) -> List[Dict[str, Any]]:
        raw = await self._company_call(lambda client: client.customer_invoices(quickbooks_customer_id))
        return [normalize_invoice(inv) for inv in raw]

    # PUBLIC_INTERFACE
    async def portal_customer_invoices(self, portal_customer_id: str) -> Dict[str, Any]:
        """Invoices of the QuickBooks customer a portal customer is mapped to."""
        mapping = self.mappings().for_portal_customer(portal_customer_id)
        if mapping is None:
            raise NotFound("No QuickBooks customer is mapped to this portal customer", details={"portal_customer_id": portal_customer_id})
        invoices = await self.customer_invoices(mapping.quickbooks_customer_id)
        return {"mapping": mapping.model_dump(mode="json"), "items": invoices, "total": len(invoices)}


def get_router() -> APIRouter:
    """QuickBooks specific endpoints: customers, invoices and portal customer mappings."""
    router = APIRouter()

    @router.get(
        "/customers",
        summary="List customers",
        description="Customers of the connected QuickBooks company.",
        response_model=ItemsSuccess,  # type: ignore[type-arg]
        responses={
            200: {"description": "Customers", "content": {"application/json": {"example": {"status": "ok", "data": {"items": [{"id": "58", "display_name": "Jane Doe", "company_name": None, "email": "jane@example.com", "balance": 0.0, "active": True}], "total": 1}, "meta": {}}}}},
            400: {"description": "Not connected or no company"},
            401: {"description": "Re-authorization required"},
            502: {"description": "Upstream error"},
        },
    )
    async def list_customers(tenant_id: str = Depends(get_tenant_id)):
        items = await QuickBooksConnector(tenant_id).list_customers()
        return ok({"items": items, "total": len(items)}, meta={"source": "quickbooks"})

    @router.get(
        "/customers/{quickbooks_customer_id}/invoices",
        summary="Customer invoices",
        description="Normalized invoices of one QuickBooks customer with paid/unpaid/partial status.",
        response_model=ItemsSuccess,  # type: ignore[type-arg]
        responses={400: {"description": "Invalid customer id"}},
    )
    async def customer_invoices(quickbooks_customer_id: str, tenant_id: str = Depends(get_tenant_id)):
        items = await QuickBooksConnector(tenant_id).customer_invoices(quickbooks_customer_id)
        return ok({"items": items, "total": len(items)}, meta={"source": "quickbooks"})

    @router.get(
        "/customer-mappings",
        summary="List customer mappings",
        response_model=ItemsSuccess,  # type: ignore[type-arg]
    )
    def list_mappings(tenant_id: str = Depends(get_tenant_id)):
        items = [m.model_dump(mode="json") for m in CustomerMappingStore(tenant_id).list()]
        return ok({"items": items, "total": len(items)})

    @router.post(
        "/customer-mappings",
        summary="Create or update customer mapping",
        description="Link a portal customer to a QuickBooks customer; an existing link for the portal customer is replaced.",
        response_model=SuccessResponse[CustomerMapping],  # type: ignore[type-arg]
    )
    def upsert_mapping(payload: CustomerMappingCreateModel, tenant_id: str = Depends(get_tenant_id)):
        mapping = CustomerMappingStore(tenant_id).upsert(
            payload.portal_customer_id,
            payload.quickbooks_customer_id,
            payload.quickbooks_customer_display_name,
        )
        return ok(mapping.model_dump(mode="json"))

    @router.delete(
        "/customer-mappings/{mapping_id}",
        summary="Delete customer mapping",
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
        responses={404: {"description": "Mapping not found"}},
    )
    def delete_mapping(mapping_id: str, tenant_id: str = Depends(get_tenant_id)):
        CustomerMappingStore(tenant_id).delete(mapping_id)
        return ok({"deleted": True, "id": mapping_id})

    @router.get(
        "/portal-customers/{portal_customer_id}/invoices",
        summary="Portal customer invoices",
        description="Invoices of the QuickBooks customer mapped to a portal customer.",
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
        responses={404: {"description": "No mapping for the portal customer"}},
    )
    async def portal_customer_invoices(portal_customer_id: str, tenant_id: str = Depends(get_tenant_id)):
        data = await QuickBooksConnector(tenant_id).portal_customer_invoices(portal_customer_id)
        return ok(data, meta={"source": "quickbooks"})

    return router


def factory(tenant_id: str) -> QuickBooksConnector:
    return QuickBooksConnector(tenant_id)
