"""Virtual interface and bypass-route lifecycle for tunnel mode.

``apply`` brings the tunnel up step by step and records an undo action for
every step that completed. ``revert`` runs those in reverse order, logs each
outcome, and keeps going regardless of individual failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from tunwarden.engine.supervisor import pump_output
from tunwarden.errors import CommandError, PrivilegeError, RoutingError, TunnelError
from tunwarden.net.commands import CommandRunner
from tunwarden.session.models import LogLine

logger = logging.getLogger(__name__)

TUN_ADDRESS = "10.0.0.2"
TUN_GATEWAY = "10.0.0.1"
TUN_NETMASK = "255.255.255.0"
TUN_PREFIX = 24
BYPASS_METRIC = 5

INTERFACE_WAIT = 5.0
INTERFACE_POLL = 0.2
STOP_GRACE = 5.0

# Split default route: more specific than 0.0.0.0/0, so it wins without
# deleting the physical default route.
_SPLIT_ROUTES = ("0.0.0.0/1", "128.0.0.0/1")

_WINDOWS_GATEWAY_QUERY = (
    'Get-NetRoute -DestinationPrefix "0.0.0.0/0" -AddressFamily IPv4 | '
    'Where-Object { $_.NextHop -ne "0.0.0.0" -and '
    '$_.InterfaceAlias -notmatch "tun" -and $_.InterfaceAlias -notmatch "TAP" } | '
    "Sort-Object -Property RouteMetric | "
    "Select-Object -First 1 -ExpandProperty NextHop"
)


@dataclass(frozen=True)
class RouteParams:
    server_ip: str
    gateway: str
    socks_port: int
    dns_servers: Sequence[str] = field(default_factory=tuple)


def interface_present(name: str) -> bool:
    return name in psutil.net_if_stats()


def parse_gateway(system: str, output: str) -> str | None:
    """Extract the physical default gateway from route-table output."""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if system == "Linux":
            tokens = line.split()
            if "via" not in tokens or tokens[-1] == "via":
                continue
            dev = tokens[tokens.index("dev") + 1] if "dev" in tokens[:-1] else ""
            if dev.startswith("tun"):
                continue
            return tokens[tokens.index("via") + 1]
        if system == "Darwin":
            if line.startswith("gateway:"):
                return line.split(":", 1)[1].strip()
            continue
        if "." in line:
            return line
    return None


class RoutingController:
    """Brings the tunnel interface up and installs the server bypass route."""

    def __init__(
        self,
        runner: CommandRunner,
        tunnel_path: Path,
        interface: str = "tun0",
        *,
        system: str | None = None,
        interface_probe: Callable[[str], bool] = interface_present,
        interface_wait: float = INTERFACE_WAIT,
        on_line: Callable[[LogLine], None] | None = None,
    ) -> None:
        self._runner = runner
        self._tunnel_path = Path(tunnel_path)
        self._interface = interface
        self._system = system or platform.system()
        self._interface_probe = interface_probe
        self._interface_wait = interface_wait
        self.on_line = on_line
        self._steps: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        self._tunnel: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []

    @property
    def tunnel_pid(self) -> int | None:
        if self._tunnel is None:
            return None
        return self._tunnel.pid

    @property
    def applied_steps(self) -> list[str]:
        return [name for name, _ in self._steps]

    async def detect_physical_gateway(self) -> str:
        """Default gateway of the physical interface, ignoring tunnel devices."""
        if self._system == "Linux":
            argv = ["ip", "-4", "route", "show", "default"]
        elif self._system == "Darwin":
            argv = ["route", "-n", "get", "default"]
        elif self._system == "Windows":
            argv = ["powershell", "-NoProfile", "-Command", _WINDOWS_GATEWAY_QUERY]
        else:
            raise RoutingError(f"Tunnel mode is not supported on {self._system}")

        try:
            result = await self._runner.run(argv)
        except CommandError as exc:
            raise RoutingError(f"Gateway detection failed: {exc}") from exc

        gateway = parse_gateway(self._system, result.stdout)
        if not gateway:
            raise RoutingError("Gateway detection returned no usable address")
        logger.info("Physical gateway: %s", gateway)
        return gateway

    async def apply(self, params: RouteParams) -> None:
        """Bring up the tunnel. On failure, undo what was done and re-raise."""
        self._runner.require_elevation("Tunnel mode")
        if self._steps:
            await self.revert()

        try:
            # Bypass first so the engine's own traffic never loops into the tunnel
            await self._add_bypass_route(params.server_ip, params.gateway)
            await self._start_tunnel(params.socks_port)
            await self._wait_for_interface()
            await self._configure_address()
            await self._configure_dns(params.dns_servers)
        except (TunnelError, OSError) as exc:
            logger.error("Tunnel setup failed: %s", exc)
            with contextlib.suppress(RoutingError):
                await self.revert()
            if isinstance(exc, (RoutingError, PrivilegeError)):
                raise
            raise RoutingError(str(exc)) from exc
        logger.info("Tunnel interface %s is up", self._interface)

    async def revert(self) -> None:
        """Undo recorded steps in reverse order. Raises RoutingError if any failed."""
        errors: list[str] = []
        while self._steps:
            name, undo = self._steps.pop()
            try:
                await undo()
                logger.info("Reverted: %s", name)
            except (TunnelError, OSError) as exc:
                logger.warning("Revert of %s failed: %s", name, exc)
                errors.append(f"{name}: {exc}")
        if errors:
            raise RoutingError("Incomplete tunnel teardown: " + "; ".join(errors))

    async def _run(self, argv: Sequence[str], what: str) -> None:
        try:
            await self._runner.run(argv, privileged=True)
        except CommandError as exc:
            raise RoutingError(f"Failed to {what}: {exc}") from exc

    def _record(self, name: str, undo: Callable[[], Awaitable[None]]) -> None:
        self._steps.append((name, undo))

    async def _noop(self) -> None:
        return None

    async def _start_tunnel(self, socks_port: int) -> None:
        argv = [
            str(self._tunnel_path),
            "-device",
            f"tun://{self._interface}",
            "-proxy",
            f"socks5://127.0.0.1:{socks_port}",
            "-loglevel",
            "info",
        ]
        try:
            proc = await self._runner.spawn(argv)
        except CommandError as exc:
            raise RoutingError(f"Failed to start tunneling binary: {exc}") from exc

        self._tunnel = proc
        sink = self.on_line or (lambda line: None)
        self._pumps = [
            asyncio.create_task(pump_output(proc.stdout, "tunnel", sink)),
            asyncio.create_task(pump_output(proc.stderr, "tunnel", sink)),
        ]
        self._record("tunnel process", self._stop_tunnel)
        logger.info("Tunneling binary started (PID %d)", proc.pid)

    async def _stop_tunnel(self) -> None:
        proc = self._tunnel
        self._tunnel = None
        if proc is None:
            return
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), STOP_GRACE)
            except asyncio.TimeoutError:
                logger.warning("Tunneling binary ignored terminate; killing")
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps = []

    async def _wait_for_interface(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._interface_wait
        while not self._interface_probe(self._interface):
            if self._tunnel is not None and self._tunnel.returncode is not None:
                raise RoutingError(
                    f"Tunneling binary exited with code {self._tunnel.returncode} "
                    "before the interface appeared"
                )
            if loop.time() >= deadline:
                raise RoutingError(
                    f"Interface {self._interface} did not appear within "
                    f"{self._interface_wait:g}s"
                )
            await asyncio.sleep(INTERFACE_POLL)

    async def _configure_address(self) -> None:
        name = self._interface
        if self._system == "Windows":
            await self._run(
                [
                    "netsh", "interface", "ip", "set", "address", f"name={name}",
                    "static", TUN_ADDRESS, TUN_NETMASK,
                    f"gateway={TUN_GATEWAY}", "gwmetric=1",
                ],
                "assign interface address",
            )
            # Address and default route go away with the interface
            self._record("interface address", self._noop)
            return

        if self._system == "Linux":
            await self._run(
                ["ip", "addr", "add", f"{TUN_ADDRESS}/{TUN_PREFIX}", "dev", name],
                "assign interface address",
            )
            await self._run(["ip", "link", "set", "dev", name, "up"], "bring interface up")
            self._record("interface address", self._noop)
            for prefix in _SPLIT_ROUTES:
                await self._run(
                    ["ip", "route", "add", prefix, "dev", name],
                    f"route {prefix} through {name}",
                )
                self._record(f"route {prefix}", self._undo_linux_route(prefix))
            return

        await self._run(
            ["ifconfig", name, TUN_ADDRESS, TUN_GATEWAY, "up"],
            "assign interface address",
        )
        self._record("interface address", self._noop)
        for prefix in _SPLIT_ROUTES:
            await self._run(
                ["route", "-n", "add", "-net", prefix, TUN_GATEWAY],
                f"route {prefix} through {name}",
            )
            self._record(f"route {prefix}", self._undo_darwin_route(prefix))

    def _undo_linux_route(self, prefix: str) -> Callable[[], Awaitable[None]]:
        async def undo() -> None:
            await self._run(
                ["ip", "route", "del", prefix, "dev", self._interface],
                f"remove route {prefix}",
            )

        return undo

    def _undo_darwin_route(self, prefix: str) -> Callable[[], Awaitable[None]]:
        async def undo() -> None:
            await self._run(["route", "-n", "delete", "-net", prefix], f"remove route {prefix}")

        return undo

    async def _configure_dns(self, servers: Sequence[str]) -> None:
        if not servers:
            return
        name = self._interface
        if self._system == "Windows":
            quoted = ", ".join(f"'{s}'" for s in servers)
            await self._run(
                [
                    "powershell", "-ExecutionPolicy", "Bypass", "-Command",
                    f"Set-DnsClientServerAddress -InterfaceAlias '{name}' "
                    f"-ServerAddresses ({quoted})",
                ],
                "set interface DNS",
            )
            self._record("interface DNS", self._noop)
        elif self._system == "Linux":
            await self._run(["resolvectl", "dns", name, *servers], "set interface DNS")
            await self._run(["resolvectl", "domain", name, "~."], "set DNS routing domain")

            async def undo() -> None:
                await self._run(["resolvectl", "revert", name], "revert interface DNS")

            self._record("interface DNS", undo)
        else:
            logger.info("Interface DNS is left to the engine on %s", self._system)

    async def _add_bypass_route(self, server_ip: str, gateway: str) -> None:
        if self._system == "Windows":
            await self._run(
                [
                    "route", "add", server_ip, "mask", "255.255.255.255",
                    gateway, "metric", str(BYPASS_METRIC),
                ],
                "add bypass route",
            )

            async def undo() -> None:
                await self._run(["route", "delete", server_ip], "remove bypass route")

        elif self._system == "Linux":
            await self._run(
                [
                    "ip", "route", "add", f"{server_ip}/32", "via", gateway,
                    "metric", str(BYPASS_METRIC),
                ],
                "add bypass route",
            )

            async def undo() -> None:
                await self._run(["ip", "route", "del", f"{server_ip}/32"], "remove bypass route")

        else:
            await self._run(
                ["route", "-n", "add", "-host", server_ip, gateway],
                "add bypass route",
            )

            async def undo() -> None:
                await self._run(["route", "-n", "delete", "-host", server_ip], "remove bypass route")

        self._record(f"bypass route {server_ip}", undo)
        logger.info("Bypass route %s via %s installed", server_ip, gateway)
