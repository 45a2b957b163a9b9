"""Reconnect policy — bounded retries after an unexpected session loss."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from tunwarden.errors import ErrorKind
from tunwarden.profiles.models import Profile, Settings
from tunwarden.session.models import (
    Notification,
    ReconnectState,
    Session,
    SessionState,
)

logger = logging.getLogger(__name__)

RECONNECT_DELAYS = (2.0, 5.0, 10.0)
SUPPRESSION_WINDOW = 1.0


class ReconnectPolicy:
    """Re-runs the full connect pipeline after the engine is lost.

    Each attempt waits its delay first, then re-resolves the profile and
    connects again, so a server whose address changed is picked up. The
    loop never runs twice at once and is cancellable by a manual connect
    or disconnect.
    """

    def __init__(
        self,
        orchestrator,
        profile_lookup: Callable[[str], Profile | None],
        *,
        delays: Sequence[float] = RECONNECT_DELAYS,
        suppression_window: float = SUPPRESSION_WINDOW,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._orchestrator = orchestrator
        self._lookup = profile_lookup
        self._delays = tuple(delays)
        self._window = suppression_window
        self._sleep = sleep
        self._clock = clock
        self.state = ReconnectState()
        self._task: asyncio.Task | None = None
        self._in_attempt = False
        self._cancelled = False

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_manual_disconnect(self) -> None:
        """Suppress reconnects for a short window after a user disconnect."""
        self.state.suppressed_until = self._clock() + self._window

    def should_reconnect(self, session: Session) -> bool:
        settings = session.settings
        profile = session.profile
        if settings is None or not settings.reconnect_on_failure:
            return False
        if session.state is not SessionState.ACTIVE:
            return False
        if profile is None or self._lookup(profile.id) is None:
            logger.info("Not reconnecting: profile is no longer configured")
            return False
        if self.in_flight or self.state.is_reconnecting:
            return False
        if self._clock() < self.state.suppressed_until:
            logger.info("Not reconnecting: session was disconnected manually")
            return False
        return True

    def start(self, session: Session) -> None:
        if self.in_flight:
            logger.warning("Reconnect already in progress")
            return
        if session.profile is None or session.settings is None:
            return
        self._cancelled = False
        self.state.is_reconnecting = True
        self.state.attempts = 0
        self._task = asyncio.get_running_loop().create_task(
            self._run(session.profile.id, session.settings)
        )

    def cancel(self) -> None:
        """Stop the retry loop. An attempt already running is left to the orchestrator."""
        if not self.in_flight:
            return
        self._cancelled = True
        if not self._in_attempt and self._task is not None:
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self, profile_id: str, settings: Settings) -> None:
        total = len(self._delays)
        try:
            for attempt, delay in enumerate(self._delays, start=1):
                logger.info("Reconnecting in %gs (attempt %d/%d)", delay, attempt, total)
                await self._sleep(delay)
                if self._cancelled:
                    return

                profile = self._lookup(profile_id)
                if profile is None:
                    logger.warning("Profile %s disappeared; giving up", profile_id)
                    break

                self.state.attempts = attempt
                self.state.last_attempt = self._clock()
                self._in_attempt = True
                try:
                    result = await self._orchestrator.connect(profile, settings, reconnect=True)
                finally:
                    self._in_attempt = False

                if self._cancelled:
                    return
                if result.success:
                    logger.info("Reconnected on attempt %d", attempt)
                    self.state.attempts = 0
                    return
                logger.warning("Reconnect attempt %d failed: %s", attempt, result.error)

            self._orchestrator.end_reconnect(
                Notification(
                    title="Connection lost",
                    message=f"Could not reconnect after {self.state.attempts} attempts",
                    error_kind=ErrorKind.ENGINE_CRASH,
                )
            )
        finally:
            self.state.is_reconnecting = False
