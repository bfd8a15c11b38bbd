from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from src.core import db
from src.core.logging import get_logger
from src.core.observability import increment_metric
from src.core.settings import get_settings
from src.sync.models import AggregateResult, Period
from src.sync.summary import MetricSummarizer

logger = get_logger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AggregateStore:
    """Persistence of AggregateResult records in the shared ``aggregates`` collection.

    Exact periods are keyed by (tenant, provider, start, end, days); rolling records by
    (tenant, provider, days) so a new rolling run replaces the previous one.
    """

    def __init__(self, col=None):
        self.collection = col if col is not None else db.collection(db.AGGREGATES)

    @staticmethod
    def key_for(result: AggregateResult) -> str:
        base = f"{result.tenant_id}::{result.provider}"
        if result.rolling:
            return f"{base}::rolling::{result.period.days}"
        return f"{base}::{result.period.start.isoformat()}::{result.period.end.isoformat()}::{result.period.days}"

    # PUBLIC_INTERFACE
    def find_exact(self, tenant_id: str, provider: str, start: date, end: date, days: int) -> Optional[AggregateResult]:
        doc = self.collection.find_one(
            {
                "tenant_id": tenant_id,
                "provider": provider,
                "rolling": False,
                "period.start": start.isoformat(),
                "period.end": end.isoformat(),
                "period.days": days,
            }
        )
        return self._from_doc(doc)

    # PUBLIC_INTERFACE
    def latest_rolling(self, tenant_id: str, provider: str, days: int) -> Optional[AggregateResult]:
        doc = self.collection.find_one(
            {"tenant_id": tenant_id, "provider": provider, "rolling": True, "period.days": days},
            sort=[("last_updated", -1)],
        )
        return self._from_doc(doc)

    # PUBLIC_INTERFACE
    def replace(self, result: AggregateResult) -> None:
        doc: Dict[str, Any] = result.model_dump(mode="json", exclude={"source", "comparison"})
        # keep a real datetime so Mongo can sort and compare it
        doc["last_updated"] = result.last_updated
        doc["_id"] = self.key_for(result)
        self.collection.replace_one({"_id": doc["_id"]}, doc, upsert=True)

    # PUBLIC_INTERFACE
    def delete_all(self, tenant_id: str, provider: str) -> int:
        res = self.collection.delete_many({"tenant_id": tenant_id, "provider": provider})
        return int(res.deleted_count)

    def _from_doc(self, doc: Optional[Dict[str, Any]]) -> Optional[AggregateResult]:
        if not doc:
            return None
        data = {k: v for k, v in doc.items() if k != "_id"}
        return AggregateResult(**data)


class FreshnessCache:
    """Serve a stored aggregate while it is fresh, otherwise compute and store a new one."""

    def __init__(
        self,
        store: Optional[AggregateStore] = None,
        ttl_hours: Optional[float] = None,
        rolling_ttl_hours: Optional[float] = None,
        rolling_window_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        sync = get_settings().sync
        self.store = store or AggregateStore()
        self.ttl = timedelta(hours=sync.CACHE_TTL_HOURS if ttl_hours is None else ttl_hours)
        self.rolling_ttl = timedelta(hours=sync.ROLLING_CACHE_TTL_HOURS if rolling_ttl_hours is None else rolling_ttl_hours)
        self.rolling_window_days = sync.ROLLING_WINDOW_DAYS if rolling_window_days is None else rolling_window_days
        self._clock = clock or _utcnow

    def is_fresh(self, result: AggregateResult) -> bool:
        ttl = self.rolling_ttl if result.rolling else self.ttl
        return self._clock() - _aware(result.last_updated) < ttl

    # PUBLIC_INTERFACE
    async def get_or_compute(
        self,
        tenant_id: str,
        provider: str,
        start: date,
        end: date,
        days: int,
        compute: Callable[[], Awaitable[AggregateResult]],
        summarizer: MetricSummarizer,
        rolling: bool = False,
        force_refresh: bool = False,
    ) -> AggregateResult:
        """Return a cached aggregate (``source="cached"``) or a freshly computed one (``source="live"``).

        Rolling requests match the latest rolling record whatever its boundary dates are, and
        are re-sliced to the requested range when they still cover it. Incomplete runs are returned but not stored.
        """
        if not force_refresh:
            if rolling:
                cached = self.store.latest_rolling(tenant_id, provider, days)
            else:
                cached = self.store.find_exact(tenant_id, provider, start, end, days)
            if cached is not None and rolling and not (cached.period.start <= start and cached.period.end >= end):
                logger.info("rolling record does not cover the requested range", extra={"cached_end": cached.period.end.isoformat()})
                cached = None
            if cached is not None and self.is_fresh(cached):
                increment_metric("cache_hits_total", 1.0)
                logger.info("serving cached aggregate", extra={"rolling": rolling, "last_updated": cached.last_updated.isoformat()})
                if rolling:
                    cached = reslice(cached, start, end, summarizer)
                return cached.model_copy(update={"source": "cached"})

        increment_metric("cache_misses_total", 1.0)
        result = await compute()
        result = result.model_copy(update={"rolling": rolling, "source": "live"})
        if result.complete:
            self.store.replace(result)
        else:
            logger.warning("not caching incomplete aggregate", extra={"failures": len(result.failures)})
        return result

    # PUBLIC_INTERFACE
    def invalidate(self, tenant_id: str, provider: str) -> int:
        deleted = self.store.delete_all(tenant_id, provider)
        logger.info("aggregate cache invalidated", extra={"deleted": deleted})
        return deleted


# PUBLIC_INTERFACE
def reslice(result: AggregateResult, start: date, end: date, summarizer: MetricSummarizer) -> AggregateResult:
    """Cut a stored aggregate down to [start, end] and recompute its summary from the kept rows."""
    lo, hi = start.isoformat(), end.isoformat()
    rows = [row for row in result.daily_breakdown if lo <= str(row.get("date")) <= hi]
    return result.model_copy(
        update={
            "period": Period(start=start, end=end, days=(end - start).days + 1),
            "daily_breakdown": rows,
            "summary": summarizer.summarize_rows(rows),
        }
    )
