from __future__ import annotations

from typing import Optional

import httpx

from src.sync.models import FetchWindow, PartialSeries
from src.sync.source import MetricsSource
from .client import GoogleBusinessClient
from .mapping import DAILY_METRICS, GOOGLE_BUSINESS_TABLE, WEBSITE_CLICKS, parse_daily_metric, parse_multi_daily_metrics


class GoogleBusinessSource(MetricsSource):
    """Daily performance metrics of one Business Profile location."""

    provider = "google_business"
    table = GOOGLE_BUSINESS_TABLE
    entity_label = "location"
    max_window_days = 45
    single_request_threshold_days = 60
    supports_probe = True

    def __init__(self, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def _client(self, token: str) -> GoogleBusinessClient:
        return GoogleBusinessClient(token, timeout=self.timeout, transport=self.transport)

    async def fetch_window(self, token: str, entity_id: str, window: FetchWindow) -> PartialSeries:
        payload = await self._client(token).fetch_multi_daily_metrics(entity_id, DAILY_METRICS, window.start, window.end)
        return parse_multi_daily_metrics(payload)

    async def probe(self, token: str, entity_id: str, window: FetchWindow) -> Optional[PartialSeries]:
        payload = await self._client(token).get_daily_metric(entity_id, WEBSITE_CLICKS, window.start, window.end)
        return parse_daily_metric(payload, WEBSITE_CLICKS)
