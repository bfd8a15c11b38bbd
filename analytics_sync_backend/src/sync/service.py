from __future__ import annotations

import asyncio
from datetime import date
from typing import Callable, Dict, Optional

from src.core.errors import UpstreamUnavailable
from src.core.logging import get_logger
from src.core.settings import get_settings
from src.core.token_lifecycle import TokenLifecycleManager
from src.sync.cache import FreshnessCache
from src.sync.models import AggregateResult, ComparisonEntry, Number
from src.sync.periods import ResolvedPeriod, previous_period, resolve_period
from src.sync.pipeline import SyncPipeline
from src.sync.source import MetricsSource
from src.sync.summary import as_number

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def build_comparison(current: Dict[str, Number], previous: Dict[str, Number]) -> Dict[str, ComparisonEntry]:
    """Bucket-by-bucket change against the previous period; change_percent is 0 when previous is 0."""
    out: Dict[str, ComparisonEntry] = {}
    for name, cur in current.items():
        prev = previous.get(name, 0)
        change = as_number(cur - prev)
        pct = round(change / prev * 100, 1) if prev else 0.0
        out[name] = ComparisonEntry(current=cur, previous=prev, change=change, change_percent=pct)
    return out


class InsightsService:
    """Cached aggregates for one tenant and provider."""

    def __init__(
        self,
        tenant_id: str,
        source: MetricsSource,
        manager: TokenLifecycleManager,
        cache: Optional[FreshnessCache] = None,
        pipeline: Optional[SyncPipeline] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.settings = get_settings().sync
        self.tenant_id = tenant_id
        self.source = source
        self.manager = manager
        self.cache = cache or FreshnessCache()
        self.pipeline = pipeline or SyncPipeline(source, manager)
        self._today = today

    @property
    def provider(self) -> str:
        return self.source.provider

    def _entity_id(self) -> str:
        return self.manager.require_connected(entity_label=self.source.entity_label).realm_id  # type: ignore[return-value]

    def resolve(self, start: Optional[str], end: Optional[str], days: Optional[int]) -> ResolvedPeriod:
        return resolve_period(
            start=start,
            end=end,
            days=days,
            today=self._today() if self._today else None,
            lag_days=self.settings.DATA_LAG_DAYS,
            default_days=self.settings.DEFAULT_PERIOD_DAYS,
            max_range_days=self.settings.MAX_RANGE_DAYS,
            rolling_window_days=self.settings.ROLLING_WINDOW_DAYS,
        )

    async def _run(self, entity_id: str, period: ResolvedPeriod) -> AggregateResult:
        try:
            result = await asyncio.wait_for(
                self.pipeline.run(entity_id, period.start, period.end),
                timeout=self.settings.PIPELINE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            logger.error("pipeline timed out", extra={"timeout_s": self.settings.PIPELINE_TIMEOUT_SECONDS})
            raise UpstreamUnavailable(f"{self.provider} did not answer in time", details={"timeout_s": self.settings.PIPELINE_TIMEOUT_SECONDS}) from exc
        self.manager.store.mark_synced(self.tenant_id, self.provider, result.last_updated)
        return result

    async def _aggregate(self, entity_id: str, period: ResolvedPeriod, force_refresh: bool) -> AggregateResult:
        return await self.cache.get_or_compute(
            self.tenant_id,
            self.provider,
            period.start,
            period.end,
            period.days,
            compute=lambda: self._run(entity_id, period),
            summarizer=self.pipeline.summarizer,
            rolling=period.rolling,
            force_refresh=force_refresh,
        )

    # PUBLIC_INTERFACE
    async def get_insights(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        days: Optional[int] = None,
        compare: bool = False,
        force_refresh: bool = False,
    ) -> AggregateResult:
        """Resolve the period, run the pre-checks, then serve from cache or fetch live."""
        period = self.resolve(start, end, days)
        entity_id = self._entity_id()
        result = await self._aggregate(entity_id, period, force_refresh)
        if compare:
            prev = await self._aggregate(entity_id, previous_period(period), force_refresh)
            result = result.model_copy(update={"comparison": build_comparison(result.summary, prev.summary)})
        return result

    # PUBLIC_INTERFACE
    async def manual_refresh(self) -> AggregateResult:
        """Drop every cached record for the tenant, then recompute the rolling window live."""
        entity_id = self._entity_id()
        self.cache.invalidate(self.tenant_id, self.provider)
        period = self.resolve(None, None, self.settings.ROLLING_WINDOW_DAYS)
        return await self._aggregate(entity_id, period, force_refresh=True)
