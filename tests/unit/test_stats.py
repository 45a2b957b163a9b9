"""Tests for traffic sampling and session totals."""

from __future__ import annotations

import asyncio

import pytest

from tunwarden.engine.supervisor import EngineStats
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.models import SessionStats
from tunwarden.session.stats import SAMPLE_CAPACITY, StatsAggregator


def run_async(coro):
    return asyncio.run(coro)


class Counters:
    """Feeds (time, uploaded, downloaded) readings to the aggregator."""

    def __init__(self) -> None:
        self.now = 0.0
        self.uploaded = 0
        self.downloaded = 0

    async def read(self) -> EngineStats:
        return EngineStats(self.uploaded, self.downloaded)

    def clock(self) -> float:
        return self.now

    def advance(self, seconds: float, up: int = 0, down: int = 0) -> None:
        self.now += seconds
        self.uploaded += up
        self.downloaded += down


@pytest.fixture
def counters():
    return Counters()


@pytest.fixture
def bus():
    return EventBus()


def _aggregator(bus, counters, **kwargs):
    return StatsAggregator(bus, counters.read, clock=counters.clock, **kwargs)


def test_first_reading_is_baseline(bus, counters):
    counters.uploaded = 5_000_000
    aggregator = _aggregator(bus, counters)

    assert run_async(aggregator.sample_once()) is None
    assert aggregator.samples == []
    assert aggregator.stats == SessionStats()


def test_rates_and_totals(bus, counters):
    published = []
    bus.subscribe(EventKind.TRAFFIC, published.append)
    aggregator = _aggregator(bus, counters)

    async def scenario():
        await aggregator.sample_once()
        counters.advance(2.0, up=2000, down=8000)
        return await aggregator.sample_once()

    sample = run_async(scenario())
    assert sample.upload_bps == 1000
    assert sample.download_bps == 4000
    assert aggregator.stats == SessionStats(uploaded=2000, downloaded=8000)
    assert published == [sample]


def test_short_interval_skipped_without_moving_baseline(bus, counters):
    aggregator = _aggregator(bus, counters)

    async def scenario():
        await aggregator.sample_once()
        counters.advance(0.3, up=300)
        skipped = await aggregator.sample_once()
        counters.advance(0.7, up=700)
        return skipped, await aggregator.sample_once()

    skipped, sample = run_async(scenario())
    assert skipped is None
    # Measured from the baseline a full second earlier
    assert sample.upload_bps == pytest.approx(1000)
    assert aggregator.stats.uploaded == 1000


def test_counter_reset_clamps_to_zero(bus, counters):
    aggregator = _aggregator(bus, counters)

    async def scenario():
        await aggregator.sample_once()
        counters.advance(1.0, up=500, down=500)
        await aggregator.sample_once()
        # Engine restarted; its counters start over
        counters.uploaded = 10
        counters.downloaded = 10
        counters.advance(1.0)
        return await aggregator.sample_once()

    sample = run_async(scenario())
    assert sample.upload_bps == 0
    assert sample.download_bps == 0
    assert aggregator.stats == SessionStats(uploaded=500, downloaded=500)


def test_totals_never_decrease(bus, counters):
    aggregator = _aggregator(bus, counters)
    totals = []

    async def scenario():
        await aggregator.sample_once()
        for up in (100, 0, 50, 0, 400):
            counters.advance(1.0, up=up)
            await aggregator.sample_once()
            totals.append(aggregator.stats.uploaded)

    run_async(scenario())
    assert totals == sorted(totals)
    assert totals[-1] == 550


def test_capacity_keeps_most_recent(bus, counters):
    aggregator = _aggregator(bus, counters)

    async def scenario():
        await aggregator.sample_once()
        for i in range(SAMPLE_CAPACITY + 10):
            counters.advance(1.0, down=i)
            await aggregator.sample_once()

    run_async(scenario())
    samples = aggregator.samples
    assert len(samples) == SAMPLE_CAPACITY == 60
    assert samples[-1].download_bps == SAMPLE_CAPACITY + 9


def test_stop_resets(bus, counters):
    aggregator = _aggregator(bus, counters)

    async def scenario():
        await aggregator.sample_once()
        counters.advance(1.0, up=100)
        await aggregator.sample_once()
        aggregator.stop()

    run_async(scenario())
    assert aggregator.samples == []
    assert aggregator.stats == SessionStats()


def test_loop_samples_each_interval(bus, counters):
    delays: list[float] = []

    async def tick(delay: float) -> None:
        delays.append(delay)
        counters.advance(delay, up=100)
        if len(delays) >= 4:
            await asyncio.Event().wait()

    aggregator = _aggregator(bus, counters, sleep=tick)

    async def scenario():
        aggregator.start()
        for _ in range(10):
            await asyncio.sleep(0)
        samples = aggregator.samples
        aggregator.stop()
        return samples

    samples = run_async(scenario())
    assert delays == [1.0] * 4
    assert len(samples) == 3
    assert all(s.upload_bps == 100 for s in samples)
