"""Session orchestrator — the connect/disconnect pipeline and its state machine.

The orchestrator is the only writer of the Session. Every step of a connect
that leaves something behind records an undo action; teardown runs those
actions in exact reverse order, best effort, and aggregates the failures.
Leaf components raise TunnelError subclasses and this module is the single
place that turns them into state transitions and OperationResults.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from tunwarden.engine.config_gen import render_config, write_config
from tunwarden.errors import (
    ConfigGenerationError,
    EngineCrash,
    ErrorKind,
    ResolutionError,
    TunnelError,
)
from tunwarden.net.firewall import FirewallParams
from tunwarden.net.resolve import interface_dns_servers, resolve_server_ip
from tunwarden.net.routing import RouteParams
from tunwarden.net.sysproxy import ProxyParams
from tunwarden.profiles.models import Profile, Settings
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.models import (
    Notification,
    OperationResult,
    Session,
    SessionState,
    StateChange,
)

logger = logging.getLogger(__name__)

# States in which nothing is in flight and a new request can be judged.
SETTLED_STATES = frozenset(
    {SessionState.IDLE, SessionState.ACTIVE, SessionState.RECONNECTING}
)


class _Cancelled(Exception):
    """A disconnect arrived while the connect pipeline was running."""


class SessionOrchestrator:
    """Drives one tunnel session through its lifecycle.

    Components are passed in rather than looked up so tests can substitute
    recording fakes for the supervisor and the three OS controllers.
    """

    def __init__(
        self,
        supervisor,
        routing,
        firewall,
        sysproxy,
        bus: EventBus,
        runtime_dir: Path,
        *,
        tunnel_interface: str = "tun0",
        resolver: Callable[[str], Awaitable[str]] = resolve_server_ip,
        reconnect_gate: Callable[[Session], bool] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._routing = routing
        self._firewall = firewall
        self._sysproxy = sysproxy
        self._bus = bus
        self._runtime_dir = Path(runtime_dir)
        self._tunnel_interface = tunnel_interface
        self._resolve = resolver
        self.reconnect_gate = reconnect_gate

        self._session = Session()
        self._undo: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        self._cancel_requested = False
        self._hold = False
        self._settled = asyncio.Event()
        self._settled.set()
        self._loss_task: asyncio.Task | None = None

        self._supervisor.on_exit = self._on_engine_exit

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_held(self) -> bool:
        """Whether the reconnect policy currently owns the session."""
        return self._hold

    @property
    def setup_trace(self) -> list[str]:
        return [name for name, _ in self._undo]

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        profile: Profile,
        settings: Settings,
        *,
        reconnect: bool = False,
    ) -> OperationResult:
        state = self._session.state
        if state is SessionState.ACTIVE and not reconnect:
            logger.info("Switching sessions: tearing down %s first", self._session.id)
            await self._teardown()
            state = self._session.state

        allowed = state is SessionState.IDLE or (
            state is SessionState.RECONNECTING and reconnect and self._hold
        )
        if not allowed:
            logger.warning("Connect rejected: session is %s", state.value)
            return OperationResult.failure(
                f"A session is already {state.value.replace('_', ' ')}",
                ErrorKind.SESSION,
            )

        self._session = Session(state=state, profile=profile, settings=settings)
        self._undo = []
        self._cancel_requested = False
        logger.info("Connecting to %s (%s:%d)", profile.name, profile.address, profile.port)

        try:
            self._set_state(SessionState.CONFIGURING)
            config_path = self._configure(profile, settings)
            self._checkpoint(engine_started=False)

            self._set_state(SessionState.STARTING_ENGINE)
            handle = await self._supervisor.start(config_path, settings.stats_port)
            self._undo.append(("engine", self._supervisor.stop))
            self._session.proxy_process = handle.pid
            self._checkpoint()

            self._set_state(SessionState.ESTABLISHING_ROUTE)
            await self._establish_route(profile, settings)
            self._checkpoint()
        except _Cancelled:
            logger.info("Connect cancelled by disconnect request")
            # A cancelled reconnect attempt also ends the reconnect hold
            self._hold = False
            await self._teardown()
            return OperationResult(
                success=False,
                message="Connection cancelled",
                error_kind=ErrorKind.SESSION,
            )
        except TunnelError as exc:
            await self._fail(exc)
            return OperationResult.failure(exc)

        self._hold = False
        self._session.started_at = time.time()
        self._set_state(SessionState.ACTIVE)
        logger.info("Session %s active", self._session.id)
        return OperationResult.ok(f"Connected to {profile.name}")

    async def disconnect(self) -> OperationResult:
        """Tear the session down. A connect in progress finishes its current step first."""
        if not self._settled.is_set():
            self._cancel_requested = True
            await self._settled.wait()

        state = self._session.state
        if state is SessionState.RECONNECTING:
            self.end_reconnect()
            return OperationResult.ok("Reconnect abandoned")
        if state is SessionState.IDLE:
            self._hold = False
            return OperationResult.ok("Disconnected")

        errors = await self._teardown()
        if errors:
            return OperationResult(
                success=False,
                message="Disconnected",
                error="Incomplete teardown: " + "; ".join(errors),
                error_kind=ErrorKind.SESSION,
            )
        return OperationResult.ok("Disconnected")

    def end_reconnect(self, notification: Notification | None = None) -> None:
        """Release the reconnect hold and settle in IDLE."""
        self._hold = False
        if self._session.state is SessionState.RECONNECTING:
            self._set_state(SessionState.IDLE)
        if notification is not None:
            self._bus.publish(EventKind.NOTIFICATION, notification)

    async def wait_settled(self) -> None:
        await self._settled.wait()
        if self._loss_task is not None:
            await self._loss_task

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _configure(self, profile: Profile, settings: Settings) -> Path:
        text = render_config(profile, settings)
        try:
            return write_config(text, self._runtime_dir)
        except OSError as exc:
            raise ConfigGenerationError(f"Could not write engine config: {exc}") from exc

    async def _establish_route(self, profile: Profile, settings: Settings) -> None:
        server_ip = profile.address
        if settings.tun_mode or settings.kill_switch:
            try:
                server_ip = await self._resolve(profile.address)
            except ResolutionError as exc:
                logger.warning("%s; falling back to raw address %s", exc, profile.address)
            self._session.resolved_server_ip = server_ip

        if settings.tun_mode:
            gateway = await self._routing.detect_physical_gateway()
            self._checkpoint()
            await self._routing.apply(
                RouteParams(
                    server_ip=server_ip,
                    gateway=gateway,
                    socks_port=settings.socks_port,
                    dns_servers=tuple(interface_dns_servers(settings)),
                )
            )
            self._undo.append(("tunnel", self._routing.revert))
            self._session.tunnel_process = self._routing.tunnel_pid
            self._checkpoint()
        elif settings.set_system_proxy:
            await self._sysproxy.apply(ProxyParams(port=settings.http_port))
            self._undo.append(("system proxy", self._sysproxy.revert))
            self._session.system_proxy_active = True
            self._checkpoint()

        if settings.kill_switch:
            await self._firewall.apply(
                FirewallParams(
                    server_ip=server_ip,
                    tunnel_interface=self._tunnel_interface if settings.tun_mode else "",
                )
            )
            self._undo.append(("kill switch", self._firewall.revert))
            self._session.kill_switch_active = True

    def _checkpoint(self, engine_started: bool = True) -> None:
        if self._cancel_requested:
            raise _Cancelled()
        if engine_started and not self._supervisor.is_running:
            raise EngineCrash("Engine exited while the connection was being set up")

    # ------------------------------------------------------------------
    # Failure, teardown and engine loss
    # ------------------------------------------------------------------

    async def _fail(self, exc: TunnelError) -> None:
        logger.error("Connect failed (%s): %s", exc.kind.value, exc)
        self._session.error = str(exc)
        self._set_state(SessionState.FAILED, error=str(exc))
        await self._rollback()
        if self._hold:
            self._set_state(SessionState.RECONNECTING, error=str(exc))
            return
        self._set_state(SessionState.IDLE, error=str(exc))
        self._bus.publish(
            EventKind.NOTIFICATION,
            Notification(title="Connection failed", message=str(exc), error_kind=exc.kind),
        )

    async def _teardown(self) -> list[str]:
        self._set_state(SessionState.DISCONNECTING)
        errors = await self._rollback()
        self._set_state(SessionState.IDLE)
        return errors

    async def _rollback(self) -> list[str]:
        errors: list[str] = []
        while self._undo:
            name, undo = self._undo.pop()
            try:
                await undo()
                logger.info("Reverted %s", name)
            except (TunnelError, OSError) as exc:
                logger.warning("Reverting %s failed: %s", name, exc)
                errors.append(f"{name}: {exc}")

        session = self._session
        session.proxy_process = None
        session.tunnel_process = None
        session.kill_switch_active = False
        session.system_proxy_active = False
        return errors

    def _on_engine_exit(self, returncode: int | None) -> None:
        # Exits during the pipeline are caught by _checkpoint
        if self._session.state is not SessionState.ACTIVE:
            return
        self._loss_task = asyncio.get_running_loop().create_task(
            self._handle_engine_loss(returncode)
        )

    async def _handle_engine_loss(self, returncode: int | None) -> None:
        exc = EngineCrash(f"Engine exited unexpectedly with code {returncode}")
        logger.error("%s", exc)
        gate = self.reconnect_gate
        if gate is None or not gate(self._session):
            await self._fail(exc)
            return

        self._hold = True
        self._session.error = str(exc)
        self._set_state(SessionState.RECONNECTING, error=str(exc))
        self._settled.clear()
        try:
            await self._rollback()
        finally:
            self._settled.set()
        self._bus.publish(EventKind.SESSION_LOST, self._session)

    def _set_state(self, new: SessionState, error: str = "") -> None:
        previous = self._session.state
        self._session.state = new
        if new in SETTLED_STATES:
            self._settled.set()
        else:
            self._settled.clear()
        if previous is not new:
            logger.debug("Session %s: %s -> %s", self._session.id, previous.value, new.value)
            self._bus.publish(
                EventKind.STATE,
                StateChange(
                    previous=previous,
                    current=new,
                    session_id=self._session.id,
                    error=error,
                ),
            )
