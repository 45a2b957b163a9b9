"""System proxy toggle — point the OS HTTP/HTTPS proxy at the local listener."""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass

from tunwarden.errors import CommandError, SystemProxyError
from tunwarden.net.commands import CommandRunner

logger = logging.getLogger(__name__)

_INTERNET_SETTINGS = r"HKCU\Software\Microsoft\Windows\CurrentVersion\Internet Settings"

# wininet InternetSetOption codes
_OPTION_SETTINGS_CHANGED = 39
_OPTION_REFRESH = 37


@dataclass(frozen=True)
class ProxyParams:
    port: int
    host: str = "127.0.0.1"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def _notify_windows() -> None:
    """Tell running applications that the proxy settings changed."""
    import ctypes

    wininet = ctypes.windll.wininet
    wininet.InternetSetOptionW(0, _OPTION_SETTINGS_CHANGED, 0, 0)
    wininet.InternetSetOptionW(0, _OPTION_REFRESH, 0, 0)


class SystemProxyToggle:
    def __init__(self, runner: CommandRunner, *, system: str | None = None) -> None:
        self._runner = runner
        self._system = system or platform.system()
        self._applied: ProxyParams | None = None

    @property
    def is_active(self) -> bool:
        return self._applied is not None

    async def apply(self, params: ProxyParams) -> None:
        try:
            if self._system == "Windows":
                await self._reg_add("ProxyServer", "REG_SZ", params.address)
                await self._reg_add("ProxyEnable", "REG_DWORD", "1")
                self._notify()
            elif self._system == "Linux":
                await self._gsettings(params)
            elif self._system == "Darwin":
                self._runner.require_elevation("System proxy")
                for service in await self._network_services():
                    for kind in ("-setwebproxy", "-setsecurewebproxy"):
                        await self._runner.run(
                            ["networksetup", kind, service, params.host, str(params.port)],
                            privileged=True,
                        )
            else:
                raise SystemProxyError(f"System proxy is not supported on {self._system}")
        except CommandError as exc:
            raise SystemProxyError(f"Failed to set system proxy: {exc}") from exc

        self._applied = params
        logger.info("System proxy set to %s", params.address)

    async def revert(self) -> None:
        try:
            if self._system == "Windows":
                await self._reg_add("ProxyEnable", "REG_DWORD", "0")
                self._notify()
            elif self._system == "Linux":
                await self._runner.run(["gsettings", "set", "org.gnome.system.proxy", "mode", "none"])
            elif self._system == "Darwin":
                for service in await self._network_services():
                    for kind in ("-setwebproxystate", "-setsecurewebproxystate"):
                        await self._runner.run(
                            ["networksetup", kind, service, "off"],
                            privileged=True,
                        )
        except CommandError as exc:
            raise SystemProxyError(f"Failed to clear system proxy: {exc}") from exc

        if self._applied is not None:
            logger.info("System proxy cleared")
        self._applied = None

    async def _reg_add(self, name: str, kind: str, value: str) -> None:
        await self._runner.run(
            ["reg", "add", _INTERNET_SETTINGS, "/v", name, "/t", kind, "/d", value, "/f"]
        )

    def _notify(self) -> None:
        try:
            _notify_windows()
        except (AttributeError, OSError) as exc:
            # Settings are written; apps pick them up on their next read
            logger.warning("Could not broadcast proxy change: %s", exc)

    async def _gsettings(self, params: ProxyParams) -> None:
        for scheme in ("http", "https"):
            schema = f"org.gnome.system.proxy.{scheme}"
            await self._runner.run(["gsettings", "set", schema, "host", params.host])
            await self._runner.run(["gsettings", "set", schema, "port", str(params.port)])
        await self._runner.run(["gsettings", "set", "org.gnome.system.proxy", "mode", "manual"])

    async def _network_services(self) -> list[str]:
        result = await self._runner.run(["networksetup", "-listallnetworkservices"])
        services = []
        for line in result.stdout.splitlines()[1:]:
            line = line.strip()
            # Disabled services are prefixed with an asterisk
            if line and not line.startswith("*"):
                services.append(line)
        return services
