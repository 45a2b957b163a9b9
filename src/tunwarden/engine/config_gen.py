"""Engine configuration generation from a profile and a settings snapshot.

Everything here is a pure transform except ``write_config``. The document
layout follows the engine's own schema: ``log``, ``inbounds``,
``outbounds``, ``routing``, ``dns`` and the ``api``/``stats``/``policy``
blocks that enable per-connection traffic accounting.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from tunwarden.errors import ConfigGenerationError
from tunwarden.profiles.models import (
    Network,
    Profile,
    RoutingMode,
    SecurityKind,
    Settings,
    ShadowsocksProfile,
    TrojanProfile,
    VLessProfile,
    VMessProfile,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "engine-config.json"

LOCALHOST = "127.0.0.1"
PROXY_TAG = "proxy"
UPSTREAM_TAG = "proxy-out"
API_TAG = "api"

DEFAULT_DNS_SERVERS = ("1.1.1.1", "8.8.8.8")

_SNIFF_OVERRIDES = ["http", "tls"]


def render_config(profile: Profile, settings: Settings) -> str:
    """Return the configuration text the engine should run with.

    A user-supplied override is used verbatim and skips generation.
    """
    if settings.engine_config_override:
        logger.info("Using custom engine configuration override")
        return settings.engine_config_override
    return json.dumps(generate_config(profile, settings), indent=2)


def write_config(text: str, directory: Path) -> Path:
    """Write configuration text to ``directory`` and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / CONFIG_FILENAME
    path.write_text(text, encoding="utf-8")
    # Credentials live in this file
    os.chmod(path, 0o600)
    logger.debug("Engine configuration written to %s", path)
    return path


def generate_config(profile: Profile, settings: Settings) -> dict[str, Any]:
    """Build the full engine configuration for one session."""
    outbounds = [generate_outbound(profile, settings)]
    if settings.upstream_proxy is not None:
        outbounds.append(_upstream_outbound(settings))
    outbounds.extend(
        [
            {"tag": "direct", "protocol": "freedom"},
            {"tag": "block", "protocol": "blackhole"},
            # Stats query responses leave through this outbound
            {"tag": API_TAG, "protocol": "freedom"},
        ]
    )

    return {
        "log": {
            "loglevel": settings.log_level.value,
            "access": "",
            "error": "",
        },
        "inbounds": generate_inbounds(settings),
        "outbounds": outbounds,
        "routing": generate_routing(settings),
        "dns": generate_dns(settings),
        "api": {"tag": API_TAG, "services": ["StatsService"]},
        "stats": {},
        "policy": {
            "levels": {
                "0": {"statsUserUplink": True, "statsUserDownlink": True},
            },
            "system": {
                "statsInboundUplink": True,
                "statsInboundDownlink": True,
                "statsOutboundUplink": True,
                "statsOutboundDownlink": True,
            },
        },
    }


def generate_inbounds(settings: Settings) -> list[dict[str, Any]]:
    """Local SOCKS and HTTP listeners plus the stats-query listener."""
    socks_settings: dict[str, Any] = {"udp": True, "ip": LOCALHOST}
    if settings.socks_auth is not None:
        socks_settings["auth"] = "password"
        socks_settings["accounts"] = [
            {"user": settings.socks_auth.username, "pass": settings.socks_auth.password}
        ]
    else:
        socks_settings["auth"] = "noauth"

    http_settings: dict[str, Any] = {"timeout": 360}
    if settings.http_auth is not None:
        http_settings["accounts"] = [
            {"user": settings.http_auth.username, "pass": settings.http_auth.password}
        ]

    return [
        {
            "tag": "socks-in",
            "port": settings.socks_port,
            "listen": LOCALHOST,
            "protocol": "socks",
            "settings": socks_settings,
            "sniffing": {
                "enabled": settings.socks_sniffing,
                "destOverride": list(_SNIFF_OVERRIDES),
            },
        },
        {
            "tag": "http-in",
            "port": settings.http_port,
            "listen": LOCALHOST,
            "protocol": "http",
            "settings": http_settings,
            "sniffing": {
                "enabled": settings.http_sniffing,
                "destOverride": list(_SNIFF_OVERRIDES),
            },
        },
        {
            "tag": API_TAG,
            "port": settings.stats_port,
            "listen": LOCALHOST,
            "protocol": "dokodemo-door",
            "settings": {"address": LOCALHOST},
        },
    ]


def generate_outbound(profile: Profile, settings: Settings) -> dict[str, Any]:
    """The profile-derived proxy outbound."""
    outbound: dict[str, Any] = {
        "tag": PROXY_TAG,
        "protocol": _protocol_tag(profile),
        "settings": _protocol_settings(profile),
        "streamSettings": generate_stream_settings(profile, settings),
    }
    if settings.mux_enabled:
        outbound["mux"] = {
            "enabled": True,
            "concurrency": settings.mux_concurrency,
        }
    return outbound


def _protocol_tag(profile: Profile) -> str:
    protocol = getattr(type(profile), "protocol", None)
    if protocol is None:
        raise ConfigGenerationError(
            f"Profile {profile.id!r} has no protocol tag"
        )
    return protocol.value


def _protocol_settings(profile: Profile) -> dict[str, Any]:
    if isinstance(profile, VMessProfile):
        return {
            "vnext": [
                {
                    "address": profile.address,
                    "port": profile.port,
                    "users": [
                        {
                            "id": profile.user_id,
                            "alterId": profile.alter_id,
                            "security": profile.cipher,
                        }
                    ],
                }
            ]
        }
    if isinstance(profile, VLessProfile):
        return {
            "vnext": [
                {
                    "address": profile.address,
                    "port": profile.port,
                    "users": [
                        {
                            "id": profile.user_id,
                            "encryption": profile.encryption,
                            "flow": profile.flow,
                        }
                    ],
                }
            ]
        }
    if isinstance(profile, TrojanProfile):
        return {
            "servers": [
                {
                    "address": profile.address,
                    "port": profile.port,
                    "password": profile.password,
                    "email": profile.email,
                }
            ]
        }
    if isinstance(profile, ShadowsocksProfile):
        return {
            "servers": [
                {
                    "address": profile.address,
                    "port": profile.port,
                    "method": profile.method,
                    "password": profile.password,
                    "uot": False,
                }
            ]
        }
    raise ConfigGenerationError(
        f"Unsupported protocol for profile {profile.id!r}: {type(profile).__name__}"
    )


def generate_stream_settings(profile: Profile, settings: Settings) -> dict[str, Any]:
    """Transport plus TLS/Reality settings for the proxy outbound."""
    transport = profile.transport
    stream: dict[str, Any] = {"network": transport.network.value}

    if transport.network is Network.TCP:
        if transport.header_type:
            stream["tcpSettings"] = {"header": {"type": transport.header_type}}
    elif transport.network is Network.WS:
        stream["wsSettings"] = {
            "path": transport.path or "/",
            "headers": {"Host": transport.host} if transport.host else {},
        }
    elif transport.network in (Network.H2, Network.HTTP):
        stream["httpSettings"] = {
            "host": [transport.host] if transport.host else [],
            "path": transport.path or "/",
        }
    elif transport.network is Network.GRPC:
        stream["grpcSettings"] = {
            "serviceName": transport.service_name,
            "multiMode": transport.grpc_multi_mode,
        }

    security = profile.security
    if security.kind is SecurityKind.TLS:
        tls: dict[str, Any] = {
            "serverName": profile.server_name,
            "allowInsecure": settings.allow_insecure,
            "alpn": list(security.alpn),
        }
        if security.fingerprint:
            tls["fingerprint"] = security.fingerprint
        stream["security"] = "tls"
        stream["tlsSettings"] = tls
    elif security.kind is SecurityKind.REALITY:
        stream["security"] = "reality"
        stream["realitySettings"] = {
            "serverName": profile.server_name,
            "fingerprint": security.fingerprint or "chrome",
            "publicKey": security.public_key,
            "shortId": security.short_id,
            "spiderX": security.spider_x,
        }

    if settings.upstream_proxy is not None:
        stream["sockopt"] = {"dialerProxy": UPSTREAM_TAG}

    return stream


def _upstream_outbound(settings: Settings) -> dict[str, Any]:
    upstream = settings.upstream_proxy
    if upstream is None or not upstream.host:
        raise ConfigGenerationError("Upstream proxy chain is missing a host")
    return {
        "tag": UPSTREAM_TAG,
        "protocol": upstream.kind.value,
        "settings": {"servers": [{"address": upstream.host, "port": upstream.port}]},
    }


def dns_servers_for_engine(settings: Settings) -> list[str]:
    """Resolver list handed to the engine's own DNS module."""
    servers: list[str] = []
    selected = settings.selected_dns_server.strip()
    if selected.startswith("DoU:"):
        ip = selected[len("DoU:") :].strip()
        if ip:
            servers.append(ip)
    elif selected.startswith("DoH:"):
        url = selected[len("DoH:") :].strip()
        if url:
            servers.append(url)
    elif selected:
        servers.append(selected)

    servers.extend(s.strip() for s in settings.custom_dns_servers if s.strip())

    if not servers:
        servers = list(DEFAULT_DNS_SERVERS)
    return servers


def generate_dns(settings: Settings) -> dict[str, Any]:
    return {
        "queryStrategy": settings.dns_query_strategy.value,
        "disableCache": settings.dns_disable_cache,
        "disableFallback": settings.dns_disable_fallback,
        "servers": dns_servers_for_engine(settings),
    }


def generate_routing(settings: Settings) -> dict[str, Any]:
    """Routing rules: stats API, LAN/CN bypass per mode, ad blocking."""
    rules: list[dict[str, Any]] = [
        {"type": "field", "inboundTag": [API_TAG], "outboundTag": API_TAG},
    ]

    if settings.routing_mode is RoutingMode.BYPASS_LAN:
        bypass_private, bypass_cn = True, False
    elif settings.routing_mode is RoutingMode.BYPASS_CHINA:
        bypass_private, bypass_cn = True, True
    elif settings.routing_mode is RoutingMode.GLOBAL:
        bypass_private, bypass_cn = False, False
    else:
        bypass_private = settings.bypass_private_addresses
        bypass_cn = settings.bypass_cn_mainland

    if bypass_private:
        rules.append(
            {"type": "field", "ip": ["geoip:private"], "outboundTag": "direct"}
        )
    if bypass_cn:
        rules.append(
            {"type": "field", "domain": ["geosite:cn"], "outboundTag": "direct"}
        )
        rules.append({"type": "field", "ip": ["geoip:cn"], "outboundTag": "direct"})

    rules.append(
        {
            "type": "field",
            "domain": ["geosite:category-ads-all"],
            "outboundTag": "block",
        }
    )

    if settings.bittorrent_direct:
        rules.append(
            {"type": "field", "protocol": ["bittorrent"], "outboundTag": "direct"}
        )

    return {"domainStrategy": "IPIfNonMatch", "rules": rules}
