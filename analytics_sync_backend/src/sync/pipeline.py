from __future__ import annotations

import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from src.core.errors import AuthRevoked, NotConnected, PartialFetchFailure, SyncError, error_code_of
from src.core.logging import get_logger
from src.core.observability import increment_metric, observe_latency
from src.core.retry import retry_async
from src.core.settings import get_settings
from src.core.token_lifecycle import TokenLifecycleManager
from src.sync.fetcher import ConcurrencyLimitedFetcher
from src.sync.merge import ResultMerger
from src.sync.models import AggregateResult, FetchWindow, PartialSeries, Period, SeriesGroup, UnitFailure
from src.sync.source import MetricsSource
from src.sync.summary import MetricSummarizer
from src.sync.windows import split

logger = get_logger(__name__)


def clip_to_window(series: PartialSeries, window: FetchWindow) -> PartialSeries:
    """Drop points a provider returned outside the requested window."""
    groups = [
        SeriesGroup(metric=g.metric, points=[p for p in g.points if window.start <= p.date <= window.end])
        for g in series.groups
    ]
    dropped = sum(len(g.points) for g in series.groups) - sum(len(g.points) for g in groups)
    if dropped:
        logger.warning("dropping points outside the fetch window", extra={"dropped": dropped, "sequence_index": window.sequence_index})
    return PartialSeries(groups=groups)


class SyncPipeline:
    """token -> split -> bounded fetch -> merge -> summarize, for one tenant entity and period."""

    def __init__(
        self,
        source: MetricsSource,
        manager: TokenLifecycleManager,
        fetcher: Optional[ConcurrencyLimitedFetcher] = None,
        merger: Optional[ResultMerger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        sync = get_settings().sync
        self.source = source
        self.manager = manager
        self.fetcher = fetcher or ConcurrencyLimitedFetcher(
            concurrency=sync.FETCH_CONCURRENCY,
            delay=sync.INTER_BATCH_DELAY_MS / 1000.0,
            sleep=sleep,
            fatal=(AuthRevoked, NotConnected),
        )
        self.merger = merger or ResultMerger()
        self.summarizer = MetricSummarizer(source.table)
        self.retry_attempts = sync.RETRY_ATTEMPTS
        self.retry_base_delay = sync.RETRY_BASE_DELAY_MS / 1000.0
        self.retry_max_delay = sync.RETRY_MAX_DELAY_MS / 1000.0
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    async def _fetch_unit(self, entity_id: str, window: FetchWindow) -> PartialSeries:
        async def attempt(token: str) -> PartialSeries:
            return await retry_async(
                lambda: self.source.fetch_window(token, entity_id, window),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                sleep=self._sleep,
            )

        return clip_to_window(await self.manager.wrap_call(attempt), window)

    async def _probe(self, entity_id: str, window: FetchWindow) -> str:
        try:
            await self.manager.wrap_call(lambda token: self.source.probe(token, entity_id, window))
        except SyncError as exc:
            logger.warning("probe fetch failed; continuing with the main run", extra={"error_code": exc.code, "error": exc.message})
            return "failed"
        except Exception:
            logger.exception("probe fetch raised; continuing with the main run")
            return "failed"
        return "ok"

    # PUBLIC_INTERFACE
    async def run(self, entity_id: str, start: date, end: date) -> AggregateResult:
        """Fetch and aggregate [start, end]. Raises the first failure when every unit failed."""
        t0 = time.perf_counter()
        windows = split(start, end, self.source.max_window_days, self.source.single_request_threshold_days)
        meta: Dict[str, Any] = {"windows": len(windows)}
        if self.source.supports_probe:
            meta["probe"] = await self._probe(entity_id, windows[-1])

        report = await self.fetcher.fetch_all(windows, lambda w: self._fetch_unit(entity_id, w))
        if not report.successes:
            raise report.failures[0].error  # type: ignore[misc]

        merged = self.merger.merge(o.result for o in report.successes if o.result is not None)
        meta["duplicates"] = merged.duplicates
        failures = [
            UnitFailure(
                sequence_index=o.index,
                start=o.unit.start,
                end=o.unit.end,
                error_code=error_code_of(o.error),  # type: ignore[arg-type]
                message=str(o.error),
            )
            for o in report.failures
        ]
        increment_metric("pipeline_runs_total", 1.0)
        observe_latency("pipeline_latency_ms_sum", (time.perf_counter() - t0) * 1000.0)
        if failures:
            partial = PartialFetchFailure(f"{len(failures)} of {len(windows)} fetch units failed", details={"failed_units": [f.sequence_index for f in failures]})
            meta["warning"] = {"code": partial.code, "message": partial.message, **partial.details}
            logger.warning("aggregate is missing fetch units", extra={"error_code": partial.code, "failed_units": len(failures), "total_units": len(windows)})
        return AggregateResult(
            tenant_id=self.manager.tenant_id,
            provider=self.source.provider,
            entity_id=entity_id,
            period=Period(start=start, end=end, days=(end - start).days + 1),
            summary=self.summarizer.summarize(merged.series),
            daily_breakdown=self.summarizer.daily_breakdown(merged.series),
            last_updated=self._clock(),
            source="live",
            complete=report.complete,
            failures=failures,
            meta=meta,
        )
