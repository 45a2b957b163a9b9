"""Profile and settings models — immutable dataclasses validated at construction."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import ClassVar


class ProfileError(ValueError):
    """A profile or settings document failed validation."""


class Protocol(enum.Enum):
    VMESS = "vmess"
    VLESS = "vless"
    TROJAN = "trojan"
    SHADOWSOCKS = "shadowsocks"


class Network(enum.Enum):
    TCP = "tcp"
    WS = "ws"
    H2 = "h2"
    HTTP = "http"
    GRPC = "grpc"


class SecurityKind(enum.Enum):
    NONE = "none"
    TLS = "tls"
    REALITY = "reality"


class LogLevel(enum.Enum):
    NONE = "none"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class DnsQueryStrategy(enum.Enum):
    USE_IP = "UseIP"
    USE_IPV4 = "UseIPv4"
    USE_IPV6 = "UseIPv6"


class RoutingMode(enum.Enum):
    GLOBAL = "global"
    BYPASS_LAN = "bypass-lan"
    BYPASS_CHINA = "bypass-china"
    CUSTOM = "custom"


class UpstreamKind(enum.Enum):
    HTTP = "http"
    SOCKS = "socks"


def _check_port(port: int, what: str) -> None:
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ProfileError(f"{what} must be between 1 and 65535, got {port!r}")


@dataclass(frozen=True)
class Transport:
    """Stream transport of a profile."""

    network: Network = Network.TCP
    header_type: str = ""
    path: str = ""
    host: str = ""
    service_name: str = ""
    grpc_multi_mode: bool = False


@dataclass(frozen=True)
class Security:
    """TLS or Reality parameters. ``kind=NONE`` means plain transport."""

    kind: SecurityKind = SecurityKind.NONE
    sni: str = ""
    alpn: tuple[str, ...] = ()
    fingerprint: str = ""
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""

    def __post_init__(self) -> None:
        if self.kind is SecurityKind.REALITY and not self.public_key:
            raise ProfileError("Reality security requires a public key")


@dataclass(frozen=True, kw_only=True)
class Profile:
    """A remote endpoint. Concrete protocols subclass this."""

    protocol: ClassVar[Protocol]

    id: str
    name: str
    address: str
    port: int
    transport: Transport = field(default_factory=Transport)
    security: Security = field(default_factory=Security)

    def __post_init__(self) -> None:
        if not self.id:
            raise ProfileError("Profile id is required")
        if not self.address or not self.address.strip():
            raise ProfileError(f"Profile '{self.id}' has no address")
        _check_port(self.port, f"Profile '{self.id}' port")

    @property
    def server_name(self) -> str:
        """Name presented in TLS/Reality handshakes."""
        return self.security.sni or self.transport.host or self.address


@dataclass(frozen=True, kw_only=True)
class VMessProfile(Profile):
    protocol: ClassVar[Protocol] = Protocol.VMESS

    user_id: str
    alter_id: int = 0
    cipher: str = "auto"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.user_id:
            raise ProfileError(f"VMess profile '{self.id}' requires a user id")


@dataclass(frozen=True, kw_only=True)
class VLessProfile(Profile):
    protocol: ClassVar[Protocol] = Protocol.VLESS

    user_id: str
    encryption: str = "none"
    flow: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.user_id:
            raise ProfileError(f"VLESS profile '{self.id}' requires a user id")


@dataclass(frozen=True, kw_only=True)
class TrojanProfile(Profile):
    protocol: ClassVar[Protocol] = Protocol.TROJAN

    password: str
    email: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.password:
            raise ProfileError(f"Trojan profile '{self.id}' requires a password")


@dataclass(frozen=True, kw_only=True)
class ShadowsocksProfile(Profile):
    protocol: ClassVar[Protocol] = Protocol.SHADOWSOCKS

    password: str
    method: str = "aes-256-gcm"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.password:
            raise ProfileError(
                f"Shadowsocks profile '{self.id}' requires a password"
            )


PROFILE_TYPES: dict[Protocol, type[Profile]] = {
    Protocol.VMESS: VMessProfile,
    Protocol.VLESS: VLessProfile,
    Protocol.TROJAN: TrojanProfile,
    Protocol.SHADOWSOCKS: ShadowsocksProfile,
}


@dataclass(frozen=True)
class UpstreamProxy:
    """Optional proxy the engine dials the remote server through."""

    kind: UpstreamKind
    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ProfileError("Upstream proxy host is required")
        _check_port(self.port, "Upstream proxy port")


@dataclass(frozen=True)
class InboundAuth:
    username: str
    password: str


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, snapshotted for the lifetime of one session."""

    log_level: LogLevel = LogLevel.WARNING
    allow_insecure: bool = False
    mux_enabled: bool = False
    mux_concurrency: int = 8

    # DNS
    dns_query_strategy: DnsQueryStrategy = DnsQueryStrategy.USE_IP
    dns_disable_cache: bool = False
    dns_disable_fallback: bool = False
    selected_dns_server: str = ""
    custom_dns_servers: tuple[str, ...] = ()
    dns_bootstrap_ip: str = ""

    # Routing
    routing_mode: RoutingMode = RoutingMode.BYPASS_LAN
    bypass_private_addresses: bool = True
    bypass_cn_mainland: bool = False
    bittorrent_direct: bool = False

    # Session behaviour
    kill_switch: bool = False
    tun_mode: bool = False
    set_system_proxy: bool = True
    reconnect_on_failure: bool = True
    connection_health_check: bool = True

    # Inbounds
    socks_port: int = 10808
    http_port: int = 10809
    stats_port: int = 10085
    socks_sniffing: bool = True
    http_sniffing: bool = True
    socks_auth: InboundAuth | None = None
    http_auth: InboundAuth | None = None

    upstream_proxy: UpstreamProxy | None = None
    engine_config_override: str | None = None

    def __post_init__(self) -> None:
        _check_port(self.socks_port, "SOCKS port")
        _check_port(self.http_port, "HTTP port")
        _check_port(self.stats_port, "Stats port")
        ports = {self.socks_port, self.http_port, self.stats_port}
        if len(ports) != 3:
            raise ProfileError("SOCKS, HTTP and stats ports must be distinct")
        if self.mux_concurrency < 1:
            raise ProfileError("Mux concurrency must be at least 1")
