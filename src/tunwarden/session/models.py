"""Session data models — session state, traffic samples, and operation results."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field

from tunwarden.errors import ErrorKind, TunnelError
from tunwarden.profiles.models import Profile, Settings


class SessionState(enum.Enum):
    """Lifecycle state of the tunnel session."""

    IDLE = "idle"
    CONFIGURING = "configuring"
    STARTING_ENGINE = "starting_engine"
    ESTABLISHING_ROUTE = "establishing_route"
    ACTIVE = "active"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# States in which a connect pipeline or teardown is in progress.
BUSY_STATES = frozenset(
    {
        SessionState.CONFIGURING,
        SessionState.STARTING_ENGINE,
        SessionState.ESTABLISHING_ROUTE,
        SessionState.DISCONNECTING,
    }
)


@dataclass
class Session:
    """The single mutable runtime session. Only the orchestrator writes it."""

    state: SessionState = SessionState.IDLE
    profile: Profile | None = None
    settings: Settings | None = None
    resolved_server_ip: str = ""
    proxy_process: int | None = None
    tunnel_process: int | None = None
    kill_switch_active: bool = False
    system_proxy_active: bool = False
    started_at: float | None = None
    error: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def uptime(self) -> float:
        if self.started_at is None or self.state is not SessionState.ACTIVE:
            return 0.0
        return max(0.0, time.time() - self.started_at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "profile_id": self.profile.id if self.profile else None,
            "profile_name": self.profile.name if self.profile else None,
            "resolved_server_ip": self.resolved_server_ip,
            "proxy_process": self.proxy_process,
            "tunnel_process": self.tunnel_process,
            "kill_switch_active": self.kill_switch_active,
            "system_proxy_active": self.system_proxy_active,
            "started_at": self.started_at,
            "uptime": self.uptime,
            "error": self.error,
        }


@dataclass
class ReconnectState:
    attempts: int = 0
    last_attempt: float | None = None
    is_reconnecting: bool = False
    suppressed_until: float = 0.0


@dataclass(frozen=True)
class TrafficSample:
    """Per-second throughput computed from two cumulative readings."""

    timestamp: float
    upload_bps: float
    download_bps: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "upload_bps": self.upload_bps,
            "download_bps": self.download_bps,
        }


@dataclass(frozen=True)
class SessionStats:
    uploaded: int = 0
    downloaded: int = 0

    def to_dict(self) -> dict:
        return {"uploaded": self.uploaded, "downloaded": self.downloaded}


@dataclass(frozen=True)
class LogLine:
    """One line of engine, tunnel, or pipeline output."""

    level: str
    source: str
    message: str
    timestamp: float = field(default_factory=time.time)

    def format(self) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
        return f"[{stamp}] [{self.level}] {self.source}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "source": self.source,
            "message": self.message,
        }


@dataclass(frozen=True)
class StateChange:
    previous: SessionState
    current: SessionState
    session_id: str
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "previous": self.previous.value,
            "current": self.current.value,
            "session_id": self.session_id,
            "error": self.error,
        }


@dataclass(frozen=True)
class HealthWarning:
    profile_id: str
    consecutive_failures: int
    message: str

    def to_dict(self) -> dict:
        return {
            "profile_id": self.profile_id,
            "consecutive_failures": self.consecutive_failures,
            "message": self.message,
        }


@dataclass(frozen=True)
class Notification:
    """A terminal, user-visible outcome."""

    title: str
    message: str
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(frozen=True)
class OperationResult:
    """Uniform outcome of every operation exposed to the view layer."""

    success: bool
    message: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, message: str = "") -> OperationResult:
        return cls(success=True, message=message)

    @classmethod
    def failure(cls, exc: TunnelError | str, kind: ErrorKind | None = None) -> OperationResult:
        if isinstance(exc, TunnelError):
            return cls(success=False, error=str(exc), error_kind=kind or exc.kind)
        return cls(success=False, error=exc, error_kind=kind)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }
