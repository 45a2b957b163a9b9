"""Session manager — the facade the CLI and web layer talk to.

Wires the supervisor, OS controllers, orchestrator, reconnect policy and
the two monitors together around one event bus. Nothing here is global:
every component is an instance owned by the manager.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from tunwarden.config import AppConfig
from tunwarden.engine.supervisor import ProcessSupervisor
from tunwarden.errors import ErrorKind
from tunwarden.net.commands import CommandRunner
from tunwarden.net.firewall import FirewallController
from tunwarden.net.resolve import resolve_server_ip, tcp_probe
from tunwarden.net.routing import RoutingController
from tunwarden.net.sysproxy import SystemProxyToggle
from tunwarden.profiles.models import Settings
from tunwarden.profiles.store import ProfileStore
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.health import HealthMonitor
from tunwarden.session.models import (
    HealthWarning,
    LogLine,
    Notification,
    OperationResult,
    Session,
    SessionState,
    SessionStats,
    StateChange,
    TrafficSample,
)
from tunwarden.session.orchestrator import SessionOrchestrator
from tunwarden.session.reconnect import ReconnectPolicy
from tunwarden.session.stats import StatsAggregator

logger = logging.getLogger(__name__)


class SessionManager:
    """Connect/disconnect by profile id, plus push-style event listeners."""

    def __init__(
        self,
        config: AppConfig,
        store: ProfileStore,
        settings: Settings,
        *,
        runner: CommandRunner | None = None,
        supervisor=None,
        routing=None,
        firewall=None,
        sysproxy=None,
        resolver: Callable[[str], Awaitable[str]] = resolve_server_ip,
        probe: Callable[[str, int], Awaitable[float]] = tcp_probe,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self.settings = settings
        self._bus = EventBus()

        runner = runner or CommandRunner()
        self._supervisor = supervisor or ProcessSupervisor(
            config.engine_path, config.asset_dir, runner
        )
        self._routing = routing or RoutingController(
            runner, config.tunnel_path, config.tunnel_interface
        )
        self._firewall = firewall or FirewallController(runner)
        self._sysproxy = sysproxy or SystemProxyToggle(runner)

        self._supervisor.on_line = self._publish_line
        self._routing.on_line = self._publish_line

        self._orchestrator = SessionOrchestrator(
            self._supervisor,
            self._routing,
            self._firewall,
            self._sysproxy,
            self._bus,
            config.runtime_dir,
            tunnel_interface=config.tunnel_interface,
            resolver=resolver,
        )
        self._policy = ReconnectPolicy(
            self._orchestrator, store.get, sleep=sleep, clock=clock
        )
        self._orchestrator.reconnect_gate = self._policy.should_reconnect
        self._health = HealthMonitor(self._bus, store, probe=probe)
        self._stats = StatsAggregator(self._bus, self._supervisor.query_stats)

        self._bus.subscribe(EventKind.STATE, self._on_state)
        self._bus.subscribe(EventKind.SESSION_LOST, self._policy.start)

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> ProfileStore:
        return self._store

    @property
    def orchestrator(self) -> SessionOrchestrator:
        return self._orchestrator

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def stats(self) -> SessionStats:
        return self._stats.stats

    @property
    def samples(self) -> list[TrafficSample]:
        return self._stats.samples

    @property
    def logs(self) -> list[LogLine]:
        return self._supervisor.logs

    # ------------------------------------------------------------------
    # View-layer operations
    # ------------------------------------------------------------------

    async def connect(self, profile_id: str) -> OperationResult:
        profile = self._store.get(profile_id)
        if profile is None:
            return OperationResult.failure(f"Unknown profile {profile_id!r}", ErrorKind.CONFIG)
        if self._policy.in_flight or self._orchestrator.is_held:
            logger.info("Manual connect supersedes the pending reconnect")
            self._policy.cancel()
            await self._orchestrator.disconnect()
        return await self._orchestrator.connect(profile, self.settings)

    async def disconnect(self) -> OperationResult:
        self._policy.mark_manual_disconnect()
        self._policy.cancel()
        return await self._orchestrator.disconnect()

    def get_session_state(self) -> Session:
        return self._orchestrator.session

    async def shutdown(self) -> None:
        if self._orchestrator.state is not SessionState.IDLE:
            await self.disconnect()
        await self._policy.wait()

    # ------------------------------------------------------------------
    # Listener registration; each returns an unsubscribe callable
    # ------------------------------------------------------------------

    def on_log_line(self, listener: Callable[[LogLine], None]) -> Callable[[], None]:
        return self._bus.subscribe(EventKind.LOG, listener)

    def on_traffic_sample(self, listener: Callable[[TrafficSample], None]) -> Callable[[], None]:
        return self._bus.subscribe(EventKind.TRAFFIC, listener)

    def on_health_warning(self, listener: Callable[[HealthWarning], None]) -> Callable[[], None]:
        return self._bus.subscribe(EventKind.HEALTH_WARNING, listener)

    def on_state_change(self, listener: Callable[[StateChange], None]) -> Callable[[], None]:
        return self._bus.subscribe(EventKind.STATE, listener)

    def on_notification(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        return self._bus.subscribe(EventKind.NOTIFICATION, listener)

    # ------------------------------------------------------------------

    def _publish_line(self, line: LogLine) -> None:
        self._bus.publish(EventKind.LOG, line)

    def _on_state(self, change: StateChange) -> None:
        if change.current is SessionState.ACTIVE:
            session = self._orchestrator.session
            self._stats.start()
            if session.settings is not None and session.settings.connection_health_check:
                if session.profile is not None:
                    self._health.start(session.profile)
        elif change.previous is SessionState.ACTIVE:
            self._stats.stop()
            self._health.stop()
