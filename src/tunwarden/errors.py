"""Error taxonomy for the tunnel pipeline.

Leaf components raise these; the session orchestrator is the single place
that catches them, decides how much to roll back, and turns them into an
``OperationResult`` for the caller.
"""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    """Distinguishable error categories surfaced to the view layer."""

    CONFIG = "config"
    SPAWN = "spawn"
    PRIVILEGE = "privilege"
    ROUTING = "routing"
    FIREWALL = "firewall"
    SYSTEM_PROXY = "system_proxy"
    RESOLUTION = "resolution"
    PROBE_TIMEOUT = "probe_timeout"
    ENGINE_CRASH = "engine_crash"
    COMMAND = "command"
    SESSION = "session"


class TunnelError(Exception):
    """Base class for every error raised inside the tunnel pipeline."""

    kind: ErrorKind = ErrorKind.SESSION


class ConfigGenerationError(TunnelError):
    """Unsupported protocol or missing field while building engine config."""

    kind = ErrorKind.CONFIG


class ProcessSpawnError(TunnelError):
    """Engine binary missing, already running, or rejected its config."""

    kind = ErrorKind.SPAWN


class PrivilegeError(TunnelError):
    """The host process lacks the elevation a privileged step needs."""

    kind = ErrorKind.PRIVILEGE


class RoutingError(TunnelError):
    kind = ErrorKind.ROUTING


class FirewallError(TunnelError):
    kind = ErrorKind.FIREWALL


class SystemProxyError(TunnelError):
    kind = ErrorKind.SYSTEM_PROXY


class ResolutionError(TunnelError):
    """DNS lookup failed. Callers degrade to the raw hostname."""

    kind = ErrorKind.RESOLUTION


class ProbeTimeout(TunnelError):
    kind = ErrorKind.PROBE_TIMEOUT


class EngineCrash(TunnelError):
    """The engine process exited while the session depended on it."""

    kind = ErrorKind.ENGINE_CRASH


class CommandError(TunnelError):
    """An OS command exited non-zero, timed out, or could not be found."""

    kind = ErrorKind.COMMAND

    def __init__(
        self,
        argv: list[str] | tuple[str, ...],
        returncode: int | None = None,
        output: str = "",
        reason: str = "",
    ) -> None:
        self.argv = tuple(argv)
        self.returncode = returncode
        self.output = output.strip()
        detail = reason or f"exit code {returncode}"
        message = f"{' '.join(self.argv)}: {detail}"
        if self.output:
            message = f"{message}: {self.output}"
        super().__init__(message)
