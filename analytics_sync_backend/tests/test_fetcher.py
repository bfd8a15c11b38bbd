"""
Unit tests for the concurrency limited fetcher.
"""
import asyncio

import pytest

from src.core.errors import AuthRevoked, UpstreamRequestError
from src.sync.fetcher import ConcurrencyLimitedFetcher

from conftest import no_sleep


async def test_outcomes_keep_planned_order():
    async def fetch(n):
        # later units finish first
        await asyncio.sleep(0.001 * (5 - n))
        return n * 10

    report = await ConcurrencyLimitedFetcher(concurrency=3, delay=0).fetch_all(range(5), fetch)
    assert [o.index for o in report.outcomes] == [0, 1, 2, 3, 4]
    assert [o.result for o in report.outcomes] == [0, 10, 20, 30, 40]
    assert report.complete


async def test_never_exceeds_concurrency():
    running = 0
    peak = 0

    async def fetch(n):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.001)
        running -= 1
        return n

    await ConcurrencyLimitedFetcher(concurrency=2, delay=0).fetch_all(range(8), fetch)
    assert peak == 2


async def test_failed_unit_does_not_stop_siblings():
    async def fetch(n):
        if n == 1:
            raise UpstreamRequestError("bad window")
        return n

    report = await ConcurrencyLimitedFetcher(concurrency=2, delay=0).fetch_all([0, 1, 2], fetch)
    assert not report.complete
    assert [o.index for o in report.successes] == [0, 2]
    assert [o.index for o in report.failures] == [1]
    assert isinstance(report.failures[0].error, UpstreamRequestError)


async def test_fatal_error_propagates():
    async def fetch(n):
        if n == 0:
            raise AuthRevoked("reconnect")
        return n

    fetcher = ConcurrencyLimitedFetcher(concurrency=1, delay=0, fatal=(AuthRevoked,))
    with pytest.raises(AuthRevoked):
        await fetcher.fetch_all([0, 1, 2], fetch)


async def test_delay_between_units_of_one_worker():
    delays = []

    async def record(seconds):
        delays.append(seconds)

    async def fetch(n):
        return n

    await ConcurrencyLimitedFetcher(concurrency=1, delay=0.5, sleep=record).fetch_all([0, 1, 2], fetch)
    assert delays == [0.5, 0.5]


async def test_empty_input():
    report = await ConcurrencyLimitedFetcher(sleep=no_sleep).fetch_all([], lambda n: n)
    assert report.outcomes == []
    assert report.complete


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyLimitedFetcher(concurrency=0)
