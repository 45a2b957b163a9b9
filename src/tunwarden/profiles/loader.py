"""Load Profile and Settings objects from YAML files."""

from __future__ import annotations

from pathlib import Path

import yaml

from tunwarden.profiles.models import (
    PROFILE_TYPES,
    DnsQueryStrategy,
    InboundAuth,
    LogLevel,
    Network,
    Profile,
    ProfileError,
    Protocol,
    RoutingMode,
    Security,
    SecurityKind,
    Settings,
    Transport,
    UpstreamKind,
    UpstreamProxy,
)
from tunwarden.profiles.store import ProfileStore

# Credential fields accepted per protocol, in addition to the common ones.
_PROTOCOL_FIELDS: dict[Protocol, tuple[str, ...]] = {
    Protocol.VMESS: ("user_id", "alter_id", "cipher"),
    Protocol.VLESS: ("user_id", "encryption", "flow"),
    Protocol.TROJAN: ("password", "email"),
    Protocol.SHADOWSOCKS: ("password", "method"),
}


def load_profiles(path: str | Path) -> ProfileStore:
    """Load every profile in a YAML file into a ProfileStore.

    A missing file yields an empty store.
    """
    path = Path(path)
    if not path.exists():
        return ProfileStore()
    return load_profiles_from_string(path.read_text(encoding="utf-8"))


def load_profiles_from_string(text: str) -> ProfileStore:
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ProfileError("Profiles YAML must be a mapping")
    entries = data.get("profiles", [])
    if not isinstance(entries, list):
        raise ProfileError("'profiles' must be a list")
    store = ProfileStore()
    for entry in entries:
        store.add(parse_profile(entry))
    return store


def parse_profile(data: dict) -> Profile:
    """Build the tagged Profile variant described by a mapping."""
    if not isinstance(data, dict):
        raise ProfileError("Each profile must be a mapping")

    raw_protocol = str(data.get("protocol", "")).lower()
    try:
        protocol = Protocol(raw_protocol)
    except ValueError:
        raise ProfileError(
            f"Unsupported protocol {raw_protocol!r} in profile {data.get('id')!r}"
        ) from None

    try:
        transport = _parse_transport(data.get("transport", {}))
        security = _parse_security(data.get("security", {}))
    except ProfileError:
        raise
    except ValueError as exc:
        raise ProfileError(f"Profile {data.get('id')!r}: {exc}") from exc

    kwargs = {
        "id": str(data.get("id", "")),
        "name": str(data.get("name", data.get("id", ""))),
        "address": str(data.get("address", "")),
        "port": data.get("port", 0),
        "transport": transport,
        "security": security,
    }
    for key in _PROTOCOL_FIELDS[protocol]:
        if key in data:
            kwargs[key] = data[key]

    try:
        return PROFILE_TYPES[protocol](**kwargs)
    except TypeError as exc:
        raise ProfileError(f"Profile {kwargs['id']!r}: {exc}") from exc


def _parse_transport(data: dict) -> Transport:
    if not data:
        return Transport()
    return Transport(
        network=Network(data.get("network", "tcp")),
        header_type=data.get("header_type", ""),
        path=data.get("path", ""),
        host=data.get("host", ""),
        service_name=data.get("service_name", ""),
        grpc_multi_mode=data.get("mode", "") == "multi",
    )


def _parse_security(data: dict) -> Security:
    if not data:
        return Security()
    alpn = data.get("alpn", ())
    if isinstance(alpn, str):
        alpn = tuple(a.strip() for a in alpn.split(",") if a.strip())
    return Security(
        kind=SecurityKind(data.get("kind", "none")),
        sni=data.get("sni", ""),
        alpn=tuple(alpn),
        fingerprint=data.get("fingerprint", ""),
        public_key=data.get("public_key", ""),
        short_id=data.get("short_id", ""),
        spider_x=data.get("spider_x", ""),
    )


def load_settings(path: str | Path) -> Settings:
    """Load settings from YAML. A missing file yields the defaults."""
    path = Path(path)
    if not path.exists():
        return Settings()
    return load_settings_from_string(path.read_text(encoding="utf-8"))


def load_settings_from_string(text: str) -> Settings:
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ProfileError("Settings YAML must be a mapping")

    kwargs = dict(data)
    try:
        if "log_level" in kwargs:
            kwargs["log_level"] = LogLevel(kwargs["log_level"])
        if "dns_query_strategy" in kwargs:
            kwargs["dns_query_strategy"] = DnsQueryStrategy(
                kwargs["dns_query_strategy"]
            )
        if "routing_mode" in kwargs:
            kwargs["routing_mode"] = RoutingMode(kwargs["routing_mode"])
    except ValueError as exc:
        raise ProfileError(str(exc)) from exc

    if "custom_dns_servers" in kwargs:
        servers = kwargs["custom_dns_servers"] or []
        if isinstance(servers, str):
            servers = [servers]
        kwargs["custom_dns_servers"] = tuple(str(s) for s in servers)

    for key in ("socks_auth", "http_auth"):
        if kwargs.get(key):
            auth = kwargs[key]
            kwargs[key] = InboundAuth(
                username=auth.get("username", ""),
                password=auth.get("password", ""),
            )

    upstream = kwargs.get("upstream_proxy")
    if upstream:
        kind = str(upstream.get("kind", "http")).replace("socks5", "socks")
        try:
            upstream_kind = UpstreamKind(kind)
        except ValueError:
            raise ProfileError(f"Unsupported upstream proxy kind {kind!r}") from None
        kwargs["upstream_proxy"] = UpstreamProxy(
            kind=upstream_kind,
            host=upstream.get("host", ""),
            port=upstream.get("port", 0),
        )

    try:
        return Settings(**kwargs)
    except TypeError as exc:
        raise ProfileError(f"Invalid settings: {exc}") from exc
