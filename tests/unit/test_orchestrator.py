"""Tests for the connect/disconnect pipeline and its state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tunwarden.engine.supervisor import EngineHandle
from tunwarden.errors import (
    ErrorKind,
    FirewallError,
    PrivilegeError,
    ProcessSpawnError,
    ResolutionError,
    RoutingError,
)
from tunwarden.profiles.models import Settings
from tunwarden.session.events import EventBus, EventKind
from tunwarden.session.models import SessionState
from tunwarden.session.orchestrator import SessionOrchestrator

RESOLVED = "198.51.100.7"


def run_async(coro):
    return asyncio.run(coro)


class RecordingSupervisor:
    def __init__(self, trace: list[str]) -> None:
        self.trace = trace
        self.on_exit = None
        self.running = False
        self.start_error: Exception | None = None
        self.start_gate: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self.running

    async def start(self, config_path: Path, stats_port: int) -> EngineHandle:
        self.trace.append("start engine")
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error
        self.running = True
        return EngineHandle(pid=4242, config_path=config_path, started_at=0.0)

    async def stop(self) -> None:
        self.trace.append("stop engine")
        self.running = False

    def crash(self, code: int = 1) -> None:
        self.running = False
        self.on_exit(code)


class RecordingController:
    tunnel_pid = 5151

    def __init__(self, trace: list[str], name: str) -> None:
        self.trace = trace
        self.name = name
        self.params: list = []
        self.apply_error: Exception | None = None
        self.revert_error: Exception | None = None
        self.gateway_error: Exception | None = None

    async def detect_physical_gateway(self) -> str:
        self.trace.append("detect gateway")
        if self.gateway_error is not None:
            raise self.gateway_error
        return "192.168.1.1"

    async def apply(self, params) -> None:
        self.trace.append(f"apply {self.name}")
        self.params.append(params)
        if self.apply_error is not None:
            raise self.apply_error

    async def revert(self) -> None:
        self.trace.append(f"revert {self.name}")
        if self.revert_error is not None:
            raise self.revert_error


class Rig:
    def __init__(self, tmp_path: Path) -> None:
        self.trace: list[str] = []
        self.supervisor = RecordingSupervisor(self.trace)
        self.routing = RecordingController(self.trace, "routing")
        self.firewall = RecordingController(self.trace, "firewall")
        self.sysproxy = RecordingController(self.trace, "sysproxy")
        self.bus = EventBus()
        self.states: list[SessionState] = []
        self.notifications: list = []
        self.lost: list = []
        self.resolved: list[str] = []
        self.resolve_error: Exception | None = None
        self.bus.subscribe(EventKind.STATE, lambda change: self.states.append(change.current))
        self.bus.subscribe(EventKind.NOTIFICATION, self.notifications.append)
        self.bus.subscribe(EventKind.SESSION_LOST, self.lost.append)
        self.orchestrator = SessionOrchestrator(
            self.supervisor,
            self.routing,
            self.firewall,
            self.sysproxy,
            self.bus,
            tmp_path / "run",
            resolver=self._resolve,
        )

    async def _resolve(self, host: str) -> str:
        self.resolved.append(host)
        if self.resolve_error is not None:
            raise self.resolve_error
        return RESOLVED


@pytest.fixture
def rig(tmp_path):
    return Rig(tmp_path)


TUN_KS = Settings(tun_mode=True, kill_switch=True)


def test_tunnel_with_kill_switch(rig, vless_profile):
    async def scenario():
        result = await rig.orchestrator.connect(vless_profile, TUN_KS)
        session = rig.orchestrator.session
        snapshot = (session.proxy_process, session.tunnel_process, session.kill_switch_active)
        return result, snapshot

    result, snapshot = run_async(scenario())
    assert result.success
    assert rig.trace == ["start engine", "detect gateway", "apply routing", "apply firewall"]
    assert rig.states == [
        SessionState.CONFIGURING,
        SessionState.STARTING_ENGINE,
        SessionState.ESTABLISHING_ROUTE,
        SessionState.ACTIVE,
    ]
    assert snapshot == (4242, 5151, True)
    route = rig.routing.params[0]
    assert route.server_ip == RESOLVED
    assert route.gateway == "192.168.1.1"
    assert route.socks_port == TUN_KS.socks_port
    firewall = rig.firewall.params[0]
    assert (firewall.server_ip, firewall.tunnel_interface) == (RESOLVED, "tun0")
    assert rig.orchestrator.setup_trace == ["engine", "tunnel", "kill switch"]


def test_disconnect_reverses_setup(rig, vless_profile):
    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.trace.clear()
        return await rig.orchestrator.disconnect()

    result = run_async(scenario())
    assert result.success
    assert rig.trace == ["revert firewall", "revert routing", "stop engine"]
    assert rig.orchestrator.state is SessionState.IDLE
    assert rig.states[-2:] == [SessionState.DISCONNECTING, SessionState.IDLE]
    assert rig.orchestrator.session.proxy_process is None
    assert not rig.orchestrator.session.kill_switch_active


def test_system_proxy_mode_skips_resolution(rig, vless_profile):
    async def scenario():
        result = await rig.orchestrator.connect(vless_profile, Settings())
        return result, rig.orchestrator.session.system_proxy_active

    result, proxy_active = run_async(scenario())
    assert result.success
    assert rig.trace == ["start engine", "apply sysproxy"]
    assert rig.resolved == []
    assert rig.sysproxy.params[0].port == Settings().http_port
    assert proxy_active


def test_dns_failure_falls_back_to_hostname(rig, vless_profile):
    rig.resolve_error = ResolutionError("Could not resolve sg1.example.net")

    result = run_async(rig.orchestrator.connect(vless_profile, Settings(tun_mode=True)))

    assert result.success
    assert rig.orchestrator.state is SessionState.ACTIVE
    assert rig.routing.params[0].server_ip == "sg1.example.net"
    assert rig.orchestrator.session.resolved_server_ip == "sg1.example.net"


def test_engine_spawn_failure(rig, vless_profile):
    rig.supervisor.start_error = ProcessSpawnError(
        "Engine exited during startup with code 23: bind: address already in use"
    )

    result = run_async(rig.orchestrator.connect(vless_profile, TUN_KS))

    assert not result.success
    assert result.error_kind is ErrorKind.SPAWN
    assert "address already in use" in result.error
    assert rig.orchestrator.state is SessionState.IDLE
    assert rig.trace == ["start engine"]
    assert rig.routing.params == []
    assert rig.firewall.params == []
    assert len(rig.notifications) == 1
    assert rig.notifications[0].error_kind is ErrorKind.SPAWN
    assert rig.states[-2:] == [SessionState.FAILED, SessionState.IDLE]


@pytest.mark.parametrize(
    "failing,expected",
    [
        (
            "gateway",
            ["start engine", "detect gateway", "stop engine"],
        ),
        (
            "routing",
            ["start engine", "detect gateway", "apply routing", "stop engine"],
        ),
        (
            "firewall",
            [
                "start engine",
                "detect gateway",
                "apply routing",
                "apply firewall",
                "revert routing",
                "stop engine",
            ],
        ),
    ],
)
def test_failure_rolls_back_completed_steps(rig, vless_profile, failing, expected):
    if failing == "gateway":
        rig.routing.gateway_error = RoutingError("no default route")
    elif failing == "routing":
        rig.routing.apply_error = RoutingError("interface did not appear")
    else:
        rig.firewall.apply_error = FirewallError("iptables refused")

    result = run_async(rig.orchestrator.connect(vless_profile, TUN_KS))

    assert not result.success
    assert rig.trace == expected
    assert rig.orchestrator.state is SessionState.IDLE
    assert rig.orchestrator.setup_trace == []


def test_privilege_error_surfaces_kind(rig, vless_profile):
    rig.routing.apply_error = PrivilegeError("Tunnel mode requires administrator/root privileges")

    result = run_async(rig.orchestrator.connect(vless_profile, TUN_KS))

    assert result.error_kind is ErrorKind.PRIVILEGE
    assert rig.notifications[0].title == "Connection failed"


def test_config_write_failure(rig, vless_profile, tmp_path):
    blocker = tmp_path / "run"
    blocker.write_text("not a directory")

    result = run_async(rig.orchestrator.connect(vless_profile, Settings()))

    assert result.error_kind is ErrorKind.CONFIG
    assert rig.trace == []


def test_only_one_session_at_a_time(rig, vless_profile, vmess_profile):
    async def scenario():
        gate = asyncio.Event()
        rig.supervisor.start_gate = gate
        first = asyncio.create_task(rig.orchestrator.connect(vless_profile, Settings()))
        await asyncio.sleep(0)
        second = await rig.orchestrator.connect(vmess_profile, Settings())
        gate.set()
        return await first, second

    first, second = run_async(scenario())
    assert first.success
    assert not second.success
    assert second.error_kind is ErrorKind.SESSION
    assert "already starting engine" in second.error
    assert rig.trace.count("start engine") == 1


def test_connect_while_active_switches_profile(rig, vless_profile, vmess_profile):
    async def scenario():
        await rig.orchestrator.connect(vless_profile, Settings())
        rig.trace.clear()
        return await rig.orchestrator.connect(vmess_profile, Settings())

    result = run_async(scenario())
    assert result.success
    assert rig.trace == ["revert sysproxy", "stop engine", "start engine", "apply sysproxy"]
    assert rig.orchestrator.session.profile is vmess_profile


def test_disconnect_during_engine_start_cancels(rig, vless_profile):
    async def scenario():
        gate = asyncio.Event()
        rig.supervisor.start_gate = gate
        connect = asyncio.create_task(rig.orchestrator.connect(vless_profile, TUN_KS))
        await asyncio.sleep(0)
        assert rig.orchestrator.state is SessionState.STARTING_ENGINE
        disconnect = asyncio.create_task(rig.orchestrator.disconnect())
        await asyncio.sleep(0)
        gate.set()
        return await connect, await disconnect

    connected, disconnected = run_async(scenario())
    assert not connected.success
    assert connected.message == "Connection cancelled"
    assert disconnected.success
    assert rig.trace == ["start engine", "stop engine"]
    assert rig.orchestrator.state is SessionState.IDLE
    assert rig.notifications == []


def test_disconnect_when_idle(rig):
    result = run_async(rig.orchestrator.disconnect())
    assert result.success
    assert rig.trace == []
    assert rig.states == []


def test_teardown_errors_are_aggregated(rig, vless_profile):
    rig.firewall.revert_error = FirewallError("rule delete refused")

    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.trace.clear()
        return await rig.orchestrator.disconnect()

    result = run_async(scenario())
    assert not result.success
    assert "kill switch: rule delete refused" in result.error
    # Remaining steps still ran
    assert rig.trace == ["revert firewall", "revert routing", "stop engine"]
    assert rig.orchestrator.state is SessionState.IDLE


def test_engine_loss_without_reconnect(rig, vless_profile):
    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.trace.clear()
        rig.supervisor.crash(1)
        await rig.orchestrator.wait_settled()

    run_async(scenario())
    assert rig.orchestrator.state is SessionState.IDLE
    assert rig.trace == ["revert firewall", "revert routing", "stop engine"]
    assert len(rig.notifications) == 1
    assert rig.notifications[0].error_kind is ErrorKind.ENGINE_CRASH
    assert rig.lost == []


def test_engine_loss_holds_for_reconnect(rig, vless_profile):
    rig.orchestrator.reconnect_gate = lambda session: True

    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.supervisor.crash(1)
        await rig.orchestrator.wait_settled()
        held = (rig.orchestrator.state, rig.orchestrator.is_held)
        refused = await rig.orchestrator.connect(vless_profile, TUN_KS)
        retried = await rig.orchestrator.connect(vless_profile, TUN_KS, reconnect=True)
        return held, refused, retried

    held, refused, retried = run_async(scenario())
    assert held == (SessionState.RECONNECTING, True)
    assert len(rig.lost) == 1
    assert not refused.success
    assert retried.success
    assert rig.orchestrator.state is SessionState.ACTIVE
    assert not rig.orchestrator.is_held
    assert rig.notifications == []


def test_failed_attempt_while_held_stays_reconnecting(rig, vless_profile):
    rig.orchestrator.reconnect_gate = lambda session: True

    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.supervisor.crash(1)
        await rig.orchestrator.wait_settled()
        rig.supervisor.start_error = ProcessSpawnError("still down")
        return await rig.orchestrator.connect(vless_profile, TUN_KS, reconnect=True)

    result = run_async(scenario())
    assert not result.success
    assert rig.orchestrator.state is SessionState.RECONNECTING
    assert rig.notifications == []


def test_disconnect_abandons_reconnect(rig, vless_profile):
    rig.orchestrator.reconnect_gate = lambda session: True

    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.supervisor.crash(1)
        await rig.orchestrator.wait_settled()
        return await rig.orchestrator.disconnect()

    result = run_async(scenario())
    assert result.message == "Reconnect abandoned"
    assert rig.orchestrator.state is SessionState.IDLE
    assert not rig.orchestrator.is_held


def test_disconnect_during_reconnect_attempt_releases_hold(rig, vless_profile):
    rig.orchestrator.reconnect_gate = lambda session: True

    async def scenario():
        await rig.orchestrator.connect(vless_profile, TUN_KS)
        rig.supervisor.crash(1)
        await rig.orchestrator.wait_settled()

        gate = asyncio.Event()
        rig.supervisor.start_gate = gate
        attempt = asyncio.create_task(
            rig.orchestrator.connect(vless_profile, TUN_KS, reconnect=True)
        )
        await asyncio.sleep(0)
        assert rig.orchestrator.state is SessionState.STARTING_ENGINE
        disconnect = asyncio.create_task(rig.orchestrator.disconnect())
        await asyncio.sleep(0)
        gate.set()
        cancelled = await attempt
        await disconnect
        after_cancel = (rig.orchestrator.state, rig.orchestrator.is_held)

        rig.supervisor.start_gate = None
        rig.supervisor.start_error = ProcessSpawnError("port already in use")
        manual = await rig.orchestrator.connect(vless_profile, TUN_KS)
        return cancelled, after_cancel, manual

    cancelled, after_cancel, manual = run_async(scenario())
    assert cancelled.message == "Connection cancelled"
    assert after_cancel == (SessionState.IDLE, False)
    assert not manual.success
    assert rig.orchestrator.state is SessionState.IDLE
    assert len(rig.notifications) == 1
    assert rig.notifications[0].error_kind is ErrorKind.SPAWN


def test_disconnect_when_idle_clears_stale_hold(rig, vless_profile):
    rig.orchestrator._hold = True
    rig.supervisor.start_error = ProcessSpawnError("port already in use")

    async def scenario():
        await rig.orchestrator.disconnect()
        return await rig.orchestrator.connect(vless_profile, TUN_KS)

    result = run_async(scenario())
    assert not rig.orchestrator.is_held
    assert not result.success
    assert rig.orchestrator.state is SessionState.IDLE
    assert len(rig.notifications) == 1
