from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from src.connectors.http import BearerAPIClient

PERFORMANCE_BASE = "https://businessprofileperformance.googleapis.com/v1"
ACCOUNT_MANAGEMENT_BASE = "https://mybusinessaccountmanagement.googleapis.com/v1"
BUSINESS_INFORMATION_BASE = "https://mybusinessbusinessinformation.googleapis.com/v1"


def _range_params(start: date, end: date) -> List[Tuple[str, Any]]:
    return [
        ("dailyRange.start_date.year", start.year),
        ("dailyRange.start_date.month", start.month),
        ("dailyRange.start_date.day", start.day),
        ("dailyRange.end_date.year", end.year),
        ("dailyRange.end_date.month", end.month),
        ("dailyRange.end_date.day", end.day),
    ]


class GoogleBusinessClient(BearerAPIClient):
    """Business Profile Performance, Account Management and Business Information APIs.

    Notes:
    - Performance data is addressed by bare location id (locations/{id}).
    - Accounts and locations are paginated with pageToken/nextPageToken.
    """

    def __init__(self, access_token: str, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(access_token, timeout=timeout, transport=transport)

    async def fetch_multi_daily_metrics(self, location: str, metrics: Sequence[str], start: date, end: date) -> Dict[str, Any]:
        url = f"{PERFORMANCE_BASE}/locations/{location}:fetchMultiDailyMetricsTimeSeries"
        params: List[Tuple[str, Any]] = [("dailyMetrics", m) for m in metrics]
        params.extend(_range_params(start, end))
        return await self._get_json(url, params=params, failure_message="Google Business metrics fetch failed")

    async def get_daily_metric(self, location: str, metric: str, start: date, end: date) -> Dict[str, Any]:
        url = f"{PERFORMANCE_BASE}/locations/{location}:getDailyMetricsTimeSeries"
        params: List[Tuple[str, Any]] = [("dailyMetric", metric)]
        params.extend(_range_params(start, end))
        return await self._get_json(url, params=params, failure_message="Google Business metric probe failed")

    async def _paginate(self, url: str, key: str, params: Dict[str, Any], failure_message: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            data = await self._get_json(url, params=query, failure_message=failure_message)
            items.extend(data.get(key) or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

    async def list_accounts(self) -> List[Dict[str, Any]]:
        return await self._paginate(f"{ACCOUNT_MANAGEMENT_BASE}/accounts", "accounts", {}, "Google Business accounts listing failed")

    async def list_locations(self, account: str) -> List[Dict[str, Any]]:
        """Locations of an account ('accounts/{id}'), name and title only."""
        return await self._paginate(
            f"{BUSINESS_INFORMATION_BASE}/{account}/locations",
            "locations",
            {"readMask": "name,title", "pageSize": 100},
            "Google Business locations listing failed",
        )
