from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from src.connectors.http import BearerAPIClient
from src.core.errors import UpstreamRequestError, ValidationError
from .mapping import query_items

MINOR_VERSION = "65"
PAGE_SIZE = 1000

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _safe_id(value: str, field_name: str) -> str:
    """Ids are interpolated into the query language; only plain ids are accepted."""
    if not _ID_RE.match(value or ""):
        raise ValidationError(f"Invalid {field_name}", details={field_name: value})
    return value


class QuickBooksClient(BearerAPIClient):
    """QuickBooks Online accounting API client for one company (realm).

    Notes:
    - All reads go through the query endpoint with minorversion 65.
    - Results are paged with STARTPOSITION (1-based) / MAXRESULTS.
    """

    def __init__(
        self,
        access_token: str,
        realm_id: str,
        base_url: str = "https://quickbooks.api.intuit.com",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_size: int = PAGE_SIZE,
    ):
        super().__init__(access_token, timeout=timeout, transport=transport)
        self.realm_id = _safe_id(realm_id, "realm_id")
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size

    async def query(self, statement: str) -> Dict[str, Any]:
        url = f"{self.base_url}/v3/company/{self.realm_id}/query"
        data = await self._get_json(url, params={"query": statement, "minorversion": MINOR_VERSION}, failure_message="QuickBooks query failed")
        fault = (data.get("QueryResponse") or {}).get("Fault") or data.get("Fault")
        if fault:
            errors = fault.get("Error") or []
            message = errors[0].get("Message") if errors else "QuickBooks query fault"
            raise UpstreamRequestError(f"QuickBooks query failed: {message}", details={"fault_type": fault.get("type")})
        return data

    async def query_all(self, entity: str, where: str = "") -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        position = 1
        while True:
            statement = f"SELECT * FROM {entity}{' ' + where if where else ''} STARTPOSITION {position} MAXRESULTS {self.page_size}"
            page = query_items(await self.query(statement), entity)
            items.extend(page)
            if len(page) < self.page_size:
                return items
            position += self.page_size

    async def invoices_between(self, start: date, end: date) -> List[Dict[str, Any]]:
        return await self.query_all("Invoice", f"WHERE TxnDate >= '{start.isoformat()}' AND TxnDate <= '{end.isoformat()}'")

    async def customers(self) -> List[Dict[str, Any]]:
        return await self.query_all("Customer")

    async def customer_invoices(self, customer_id: str) -> List[Dict[str, Any]]:
        return await self.query_all("Invoice", f"WHERE CustomerRef = '{_safe_id(customer_id, 'quickbooks_customer_id')}'")
