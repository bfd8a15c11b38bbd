from __future__ import annotations

from typing import Optional

import httpx

from src.sync.models import FetchWindow, PartialSeries
from src.sync.source import MetricsSource
from .client import QuickBooksClient
from .mapping import QUICKBOOKS_TABLE, parse_invoices


class QuickBooksSource(MetricsSource):
    """Invoice amounts of one QuickBooks company, per transaction date."""

    provider = "quickbooks"
    table = QUICKBOOKS_TABLE
    entity_label = "company"
    max_window_days = 90
    single_request_threshold_days = 90

    def __init__(self, base_url: str = "https://quickbooks.api.intuit.com", timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def fetch_window(self, token: str, entity_id: str, window: FetchWindow) -> PartialSeries:
        client = QuickBooksClient(token, entity_id, base_url=self.base_url, timeout=self.timeout, transport=self.transport)
        return parse_invoices(await client.invoices_between(window.start, window.end))
