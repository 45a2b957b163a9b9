"""Health monitor — periodic reachability probes while the session is active."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tunwarden.errors import ProbeTimeout
from tunwarden.net.resolve import tcp_probe
from tunwarden.profiles.models import Profile
from tunwarden.profiles.store import ProfileStore
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.models import HealthWarning

logger = logging.getLogger(__name__)

HEALTH_INTERVAL = 30.0
INITIAL_DELAY = 30.0
FAILURE_THRESHOLD = 3


class HealthMonitor:
    """Probes the active server and warns after repeated failures.

    The warning is advisory: it never disconnects or reconnects.
    """

    def __init__(
        self,
        bus: EventBus,
        store: ProfileStore,
        *,
        probe: Callable[[str, int], Awaitable[float]] = tcp_probe,
        interval: float = HEALTH_INTERVAL,
        initial_delay: float = INITIAL_DELAY,
        threshold: int = FAILURE_THRESHOLD,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._store = store
        self._probe = probe
        self._interval = interval
        self._initial_delay = initial_delay
        self._threshold = threshold
        self._sleep = sleep
        self.consecutive_failures = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_once(self, profile: Profile) -> float | None:
        """Run one probe. Returns the latency in ms, or None on failure."""
        try:
            latency = await self._probe(profile.address, profile.port)
        except ProbeTimeout as exc:
            self.consecutive_failures += 1
            logger.debug(
                "Health probe failed (%d/%d): %s",
                self.consecutive_failures,
                self._threshold,
                exc,
            )
            if self.consecutive_failures >= self._threshold:
                warning = HealthWarning(
                    profile_id=profile.id,
                    consecutive_failures=self.consecutive_failures,
                    message=(
                        f"Connection to {profile.name} looks degraded: "
                        f"{self.consecutive_failures} health checks failed in a row"
                    ),
                )
                logger.warning("%s", warning.message)
                self.consecutive_failures = 0
                self._bus.publish(EventKind.HEALTH_WARNING, warning)
            return None

        self.consecutive_failures = 0
        self._store.set_latency(profile.id, latency)
        logger.debug("Health probe for %s: %.1f ms", profile.id, latency)
        return latency

    def start(self, profile: Profile) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._loop(profile))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.consecutive_failures = 0

    async def _loop(self, profile: Profile) -> None:
        await self._sleep(self._initial_delay)
        while True:
            await self.check_once(profile)
            await self._sleep(self._interval)
