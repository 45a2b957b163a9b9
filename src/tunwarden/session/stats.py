"""Traffic stats from the engine's cumulative counters."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from tunwarden.engine.supervisor import EngineStats
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.models import SessionStats, TrafficSample

logger = logging.getLogger(__name__)

SAMPLE_CAPACITY = 60
SAMPLE_INTERVAL = 1.0
MIN_INTERVAL = 0.5


class StatsAggregator:
    """Turns cumulative engine counters into throughput samples and totals.

    The first reading only sets the baseline. Totals grow by clamped deltas,
    so they never decrease while the session is active even if the engine's
    counters reset.
    """

    def __init__(
        self,
        bus: EventBus,
        read_counters: Callable[[], Awaitable[EngineStats]],
        *,
        capacity: int = SAMPLE_CAPACITY,
        interval: float = SAMPLE_INTERVAL,
        min_interval: float = MIN_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._read = read_counters
        self._interval = interval
        self._min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._samples: deque[TrafficSample] = deque(maxlen=capacity)
        self._stats = SessionStats()
        self._previous: tuple[float, int, int] | None = None
        self._task: asyncio.Task | None = None

    @property
    def samples(self) -> list[TrafficSample]:
        return list(self._samples)

    @property
    def stats(self) -> SessionStats:
        return self._stats

    def reset(self) -> None:
        self._samples.clear()
        self._stats = SessionStats()
        self._previous = None

    async def sample_once(self) -> TrafficSample | None:
        reading = await self._read()
        now = self._clock()

        if self._previous is None:
            self._previous = (now, reading.uploaded, reading.downloaded)
            return None

        then, prev_up, prev_down = self._previous
        elapsed = now - then
        if elapsed < self._min_interval:
            return None

        up = max(0, reading.uploaded - prev_up)
        down = max(0, reading.downloaded - prev_down)
        self._previous = (now, reading.uploaded, reading.downloaded)

        sample = TrafficSample(
            timestamp=time.time(),
            upload_bps=up / elapsed,
            download_bps=down / elapsed,
        )
        self._samples.append(sample)
        self._stats = SessionStats(
            uploaded=self._stats.uploaded + up,
            downloaded=self._stats.downloaded + down,
        )
        self._bus.publish(EventKind.TRAFFIC, sample)
        return sample

    def start(self) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.reset()

    async def _loop(self) -> None:
        while True:
            await self.sample_once()
            await self._sleep(self._interval)
