"""
Tests for the sync pipeline, the freshness cache and the insights service.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from src.connectors.google_business.mapping import parse_daily_metric
from src.core.errors import AuthRevoked, UpstreamRequestError, UpstreamUnavailable
from src.core.models import ConnectionCredential
from src.core.settings import get_settings
from src.core.token_lifecycle import TokenLifecycleManager
from src.core.token_store import CredentialStore
from src.sync.cache import AggregateStore, FreshnessCache
from src.sync.models import AggregateResult, MetricPoint, PartialSeries, Period, SeriesGroup
from src.sync.pipeline import SyncPipeline
from src.sync.service import InsightsService, build_comparison
from src.sync.summary import MetricSummarizer

from conftest import COUNT_TABLE, FakeOAuth, FakeSource, no_sleep


def _connect(realm_id="loc-1", **extra):
    CredentialStore().save(
        ConnectionCredential(
            tenant_id="t1",
            provider="google_business",
            access_token="access-0",
            refresh_token="refresh-0",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            connected=True,
            realm_id=realm_id,
            **extra,
        )
    )


def _manager():
    return TokenLifecycleManager("t1", "google_business", FakeOAuth(), sleep=no_sleep)


def _service(source, today=date(2024, 6, 30)):
    manager = _manager()
    days = [today]
    service = InsightsService(
        "t1",
        source,
        manager,
        cache=FreshnessCache(),
        pipeline=SyncPipeline(source, manager, sleep=no_sleep),
        today=lambda: days[0],
    )
    return service, days


def _aggregate(start, end, days, rolling=False, last_updated=None):
    rows = [
        {"date": (start + timedelta(days=i)).isoformat(), "clicks": 1, "calls": 2}
        for i in range((end - start).days + 1)
    ]
    return AggregateResult(
        tenant_id="t1",
        provider="google_business",
        entity_id="loc-1",
        period=Period(start=start, end=end, days=days),
        rolling=rolling,
        summary={"clicks": len(rows), "calls": 2 * len(rows)},
        daily_breakdown=rows,
        last_updated=last_updated or datetime.now(timezone.utc),
    )


# ---- pipeline ----


async def test_pipeline_merges_all_windows(fake_source):
    _connect()
    result = await SyncPipeline(fake_source, _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 25))

    assert [(w.start, w.end) for w in sorted(fake_source.windows, key=lambda w: w.sequence_index)] == [
        (date(2024, 1, 1), date(2024, 1, 10)),
        (date(2024, 1, 11), date(2024, 1, 20)),
        (date(2024, 1, 21), date(2024, 1, 25)),
    ]
    assert result.complete is True
    assert result.summary == {"clicks": 25, "calls": 50}
    assert len(result.daily_breakdown) == 25
    assert result.daily_breakdown[0] == {"date": "2024-01-01", "clicks": 1, "calls": 2}
    assert result.period.days == 25
    assert result.entity_id == "loc-1"
    assert result.meta["windows"] == 3
    assert set(fake_source.tokens) == {"access-0"}


async def test_pipeline_reports_partial_failure():
    _connect()
    source = FakeSource(fail_windows={1: UpstreamRequestError("window rejected")})

    result = await SyncPipeline(source, _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 25))

    assert result.complete is False
    assert result.summary == {"clicks": 15, "calls": 30}
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.sequence_index == 1
    assert failure.error_code == "UPSTREAM_ERROR"
    assert failure.start == date(2024, 1, 11)
    assert result.meta["warning"]["code"] == "PARTIAL_FETCH_FAILURE"
    assert result.meta["warning"]["failed_units"] == [1]


async def test_pipeline_raises_when_every_window_fails():
    _connect()
    source = FakeSource(fail_windows={0: UpstreamRequestError("nope")})
    with pytest.raises(UpstreamRequestError):
        await SyncPipeline(source, _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 5))


async def test_pipeline_retries_transient_window_failures():
    _connect()

    class Flaky(FakeSource):
        attempts = 0

        async def fetch_window(self, token, entity_id, window):
            Flaky.attempts += 1
            if Flaky.attempts == 1:
                raise UpstreamUnavailable("503 from provider")
            return await super().fetch_window(token, entity_id, window)

    result = await SyncPipeline(Flaky(), _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 5))
    assert result.complete is True
    assert Flaky.attempts == 2


async def test_points_outside_the_window_are_dropped():
    _connect()

    class Spills(FakeSource):
        async def fetch_window(self, token, entity_id, window):
            series = await super().fetch_window(token, entity_id, window)
            series.groups.append(SeriesGroup("CLICKS", [MetricPoint(date(2023, 12, 31), 100.0)]))
            return series

    result = await SyncPipeline(Spills(), _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 5))

    assert result.summary == {"clicks": 5, "calls": 10}
    assert result.daily_breakdown[0]["date"] == "2024-01-01"
    assert len(result.daily_breakdown) == 5


class _DiagnosticSource(FakeSource):
    supports_probe = True

    def __init__(self, probe_outcome):
        super().__init__()
        self.probe_outcome = probe_outcome

    async def probe(self, token, entity_id, window):
        if isinstance(self.probe_outcome, BaseException):
            raise self.probe_outcome
        return self.probe_outcome(window)


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (lambda window: PartialSeries(groups=[SeriesGroup("CLICKS", [MetricPoint(window.end, 1.0)])]), "ok"),
        (UpstreamUnavailable("diagnostic fetch timed out"), "failed"),
        (lambda window: parse_daily_metric({"timeSeries": {"datedValues": ["garbage"]}}, "CLICKS"), "failed"),
        (KeyError("dailyMetric"), "failed"),
    ],
)
async def test_diagnostic_fetch_outcome_is_recorded_and_never_fatal(outcome, expected):
    _connect()
    source = _DiagnosticSource(outcome)

    result = await SyncPipeline(source, _manager(), sleep=no_sleep).run("loc-1", date(2024, 1, 1), date(2024, 1, 5))

    assert result.meta["probe"] == expected
    assert result.complete is True
    assert result.summary == {"clicks": 5, "calls": 10}


# ---- cache and service ----


async def test_second_request_is_served_from_cache(fake_source):
    _connect()
    service, _ = _service(fake_source)

    first = await service.get_insights(days=30)
    fetched = len(fake_source.windows)
    second = await service.get_insights(days=30)

    assert first.source == "live"
    assert second.source == "cached"
    assert second.summary == first.summary
    assert len(fake_source.windows) == fetched
    assert CredentialStore().get("t1", "google_business").last_synced is not None


async def test_force_refresh_bypasses_cache(fake_source):
    _connect()
    service, _ = _service(fake_source)
    await service.get_insights(days=30)
    result = await service.get_insights(days=30, force_refresh=True)
    assert result.source == "live"


async def test_incomplete_aggregate_is_not_cached():
    _connect()
    source = FakeSource(fail_windows={0: UpstreamRequestError("bad")})
    service, _ = _service(source)

    first = await service.get_insights(days=30)
    second = await service.get_insights(days=30)

    assert first.complete is False
    assert second.source == "live"


@pytest.mark.parametrize(
    "rolling, ttl_hours",
    [(False, 12), (True, 24)],
)
async def test_cache_ttl_boundaries(rolling, ttl_hours):
    t0 = datetime(2024, 6, 30, 8, 0, tzinfo=timezone.utc)
    now = [t0]
    cache = FreshnessCache(clock=lambda: now[0])
    start, end = date(2024, 3, 31), date(2024, 6, 28)
    computed = []

    async def compute():
        computed.append(now[0])
        return _aggregate(start, end, days=90, rolling=rolling, last_updated=t0)

    async def read():
        return await cache.get_or_compute("t1", "google_business", start, end, 90, compute, MetricSummarizer(COUNT_TABLE), rolling=rolling)

    assert (await read()).source == "live"
    now[0] = t0 + timedelta(hours=ttl_hours) - timedelta(seconds=1)
    assert (await read()).source == "cached"
    now[0] = t0 + timedelta(hours=ttl_hours) + timedelta(seconds=1)
    assert (await read()).source == "live"
    assert len(computed) == 2


async def test_rolling_record_is_recomputed_once_the_window_moves(fake_source):
    _connect()
    service, days = _service(fake_source)

    first = await service.get_insights(days=90)
    assert first.rolling is True
    assert first.period.end == date(2024, 6, 28)
    assert (await service.get_insights(days=90)).source == "cached"

    days[0] = date(2024, 7, 1)
    second = await service.get_insights(days=90)

    assert second.source == "live"
    assert second.period.start == date(2024, 4, 1)
    assert second.period.end == date(2024, 6, 29)
    assert second.complete is True
    assert second.summary["clicks"] == len(second.daily_breakdown) == 90


async def test_wider_rolling_record_is_resliced(fake_source):
    _connect()
    service, _ = _service(fake_source)
    AggregateStore().replace(_aggregate(date(2024, 3, 30), date(2024, 6, 28), days=90, rolling=True))

    result = await service.get_insights(days=90)

    assert result.source == "cached"
    assert result.period.start == date(2024, 3, 31)
    assert result.daily_breakdown[0]["date"] == "2024-03-31"
    assert result.summary == {"clicks": 90, "calls": 180}
    assert fake_source.windows == []


async def test_compare_adds_previous_period(fake_source):
    _connect()
    service, _ = _service(fake_source)

    result = await service.get_insights(start="2024-06-01", end="2024-06-10", compare=True)

    assert result.comparison["clicks"].current == 10
    assert result.comparison["clicks"].previous == 10
    assert result.comparison["clicks"].change == 0
    assert result.comparison["clicks"].change_percent == 0.0


def test_build_comparison_percentages():
    out = build_comparison({"calls": 15, "views": 4}, {"calls": 10, "views": 0})
    assert out["calls"].change == 5
    assert out["calls"].change_percent == 50.0
    assert out["views"].change_percent == 0.0


async def test_needs_reauth_wins_over_cached_data(fake_source):
    _connect()
    service, _ = _service(fake_source)
    await service.get_insights(days=30)

    _connect(needs_reauth=True)
    with pytest.raises(AuthRevoked):
        await service.get_insights(days=30)


async def test_manual_refresh_drops_cached_records(fake_source):
    _connect()
    service, _ = _service(fake_source)
    await service.get_insights(days=30)
    store = AggregateStore()

    result = await service.manual_refresh()

    assert result.source == "live"
    assert result.rolling is True
    assert result.period.days == 90
    assert store.find_exact("t1", "google_business", date(2024, 5, 30), date(2024, 6, 28), 30) is None
    assert store.latest_rolling("t1", "google_business", 90) is not None


async def test_pipeline_timeout_becomes_upstream_unavailable(monkeypatch):
    _connect()

    class Slow(FakeSource):
        async def fetch_window(self, token, entity_id, window):
            await asyncio.sleep(1)
            return await super().fetch_window(token, entity_id, window)

    monkeypatch.setattr(get_settings().sync, "PIPELINE_TIMEOUT_SECONDS", 0.01)
    service, _ = _service(Slow())
    with pytest.raises(UpstreamUnavailable):
        await service.get_insights(days=5)
