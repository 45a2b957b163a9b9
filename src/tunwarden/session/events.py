"""Event bus — pushes session events to subscribed listeners."""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    STATE = "state"
    LOG = "log"
    TRAFFIC = "traffic"
    HEALTH_WARNING = "health_warning"
    NOTIFICATION = "notification"
    SESSION_LOST = "session_lost"


Listener = Callable[[Any], None]


class EventBus:
    """Synchronous fan-out of events to listeners.

    A listener that raises is logged and skipped; the remaining listeners
    still receive the event.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventKind, list[Listener]] = defaultdict(list)
        self._any: list[Callable[[EventKind, Any], None]] = []

    def subscribe(self, kind: EventKind, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``kind``. Returns an unsubscribe callable."""
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[kind]:
                self._listeners[kind].remove(listener)

        return unsubscribe

    def subscribe_all(self, listener: Callable[[EventKind, Any], None]) -> Callable[[], None]:
        self._any.append(listener)

        def unsubscribe() -> None:
            if listener in self._any:
                self._any.remove(listener)

        return unsubscribe

    def publish(self, kind: EventKind, payload: Any) -> None:
        for listener in list(self._listeners[kind]):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %s event failed", kind.value)
        for listener in list(self._any):
            try:
                listener(kind, payload)
            except Exception:
                logger.exception("Listener for %s event failed", kind.value)
