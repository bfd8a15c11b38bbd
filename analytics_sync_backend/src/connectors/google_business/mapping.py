from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from src.core.errors import UpstreamRequestError
from src.core.logging import get_logger
from src.sync.models import MetricPoint, PartialSeries, SeriesGroup
from src.sync.summary import Bucket, SummaryTable

logger = get_logger(__name__)

IMPRESSIONS_DESKTOP_SEARCH = "BUSINESS_IMPRESSIONS_DESKTOP_SEARCH"
IMPRESSIONS_MOBILE_SEARCH = "BUSINESS_IMPRESSIONS_MOBILE_SEARCH"
IMPRESSIONS_DESKTOP_MAPS = "BUSINESS_IMPRESSIONS_DESKTOP_MAPS"
IMPRESSIONS_MOBILE_MAPS = "BUSINESS_IMPRESSIONS_MOBILE_MAPS"
WEBSITE_CLICKS = "WEBSITE_CLICKS"
CALL_CLICKS = "CALL_CLICKS"
DIRECTION_REQUESTS = "BUSINESS_DIRECTION_REQUESTS"

DAILY_METRICS = [
    IMPRESSIONS_DESKTOP_SEARCH,
    IMPRESSIONS_MOBILE_SEARCH,
    IMPRESSIONS_DESKTOP_MAPS,
    IMPRESSIONS_MOBILE_MAPS,
    WEBSITE_CLICKS,
    CALL_CLICKS,
    DIRECTION_REQUESTS,
]

GOOGLE_BUSINESS_TABLE = SummaryTable(
    [
        Bucket("views", (IMPRESSIONS_DESKTOP_SEARCH, IMPRESSIONS_MOBILE_SEARCH, IMPRESSIONS_DESKTOP_MAPS, IMPRESSIONS_MOBILE_MAPS)),
        Bucket("searches", (IMPRESSIONS_DESKTOP_SEARCH, IMPRESSIONS_MOBILE_SEARCH)),
        Bucket("website_clicks", (WEBSITE_CLICKS,)),
        Bucket("calls", (CALL_CLICKS,)),
        Bucket("directions", (DIRECTION_REQUESTS,)),
    ]
)


def _to_date(raw: Any) -> Optional[date]:
    if not isinstance(raw, dict):
        return None
    try:
        return date(int(raw["year"]), int(raw["month"]), int(raw["day"]))
    except (KeyError, TypeError, ValueError):
        return None


def _points(time_series: Any) -> List[MetricPoint]:
    """Dated values of one series; an absent value means zero for that day."""
    if time_series is None:
        return []
    if not isinstance(time_series, dict):
        raise UpstreamRequestError("Unexpected timeSeries in performance API response")
    points: List[MetricPoint] = []
    for dv in time_series.get("datedValues") or []:
        if not isinstance(dv, dict):
            raise UpstreamRequestError("Unexpected datedValues entry in performance API response")
        day = _to_date(dv.get("date"))
        if day is None:
            logger.warning("skipping dated value without a valid date")
            continue
        try:
            value = float(dv.get("value") or 0)
        except (TypeError, ValueError):
            value = 0.0
        points.append(MetricPoint(date=day, value=value))
    return points


# PUBLIC_INTERFACE
def parse_multi_daily_metrics(payload: Dict[str, Any]) -> PartialSeries:
    """Parse a fetchMultiDailyMetricsTimeSeries response into a PartialSeries.

    Shape: multiDailyMetricTimeSeries[].dailyMetricTimeSeries[]{dailyMetric, timeSeries}.
    """
    if not isinstance(payload, dict):
        raise UpstreamRequestError("Unexpected performance API response")
    groups: List[SeriesGroup] = []
    for multi in payload.get("multiDailyMetricTimeSeries") or []:
        if not isinstance(multi, dict):
            raise UpstreamRequestError("Unexpected multiDailyMetricTimeSeries entry")
        for series in multi.get("dailyMetricTimeSeries") or []:
            if not isinstance(series, dict):
                raise UpstreamRequestError("Unexpected dailyMetricTimeSeries entry")
            metric = series.get("dailyMetric")
            if not metric:
                continue
            groups.append(SeriesGroup(metric=metric, points=_points(series.get("timeSeries"))))
    return PartialSeries(groups=groups)


# PUBLIC_INTERFACE
def parse_daily_metric(payload: Dict[str, Any], metric: str) -> PartialSeries:
    """Parse a single-metric getDailyMetricsTimeSeries response."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise UpstreamRequestError("Unexpected performance API response")
    return PartialSeries(groups=[SeriesGroup(metric=metric, points=_points(payload.get("timeSeries")))])


# PUBLIC_INTERFACE
def location_id(name_or_id: str) -> str:
    """'locations/123' or 'accounts/1/locations/123' -> '123'."""
    return name_or_id.rstrip("/").split("/")[-1]


def map_account(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": raw.get("name"),
        "account_name": raw.get("accountName"),
        "type": raw.get("type"),
    }


def map_location(raw: Dict[str, Any], account: Optional[str] = None) -> Dict[str, Any]:
    name = raw.get("name") or ""
    return {
        "id": location_id(name) if name else None,
        "name": name,
        "title": raw.get("title"),
        "account": account,
    }
