"""Server address resolution, interface DNS selection, and latency probes."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time

from tunwarden.errors import ProbeTimeout, ResolutionError
from tunwarden.profiles.models import Settings

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT = 5.0
PROBE_TIMEOUT = 5.0

DEFAULT_INTERFACE_DNS = ("1.1.1.1", "1.0.0.1")

# Well-known DNS-over-HTTPS providers and the plain resolver IP behind each
_DOH_BOOTSTRAP: list[tuple[str, str]] = [
    ("cloudflare", "1.1.1.1"),
    ("google", "8.8.8.8"),
    ("quad9", "9.9.9.9"),
]


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


async def resolve_server_ip(host: str, timeout: float = RESOLVE_TIMEOUT) -> str:
    """Resolve ``host`` to an IPv4 address.

    IP literals are returned unchanged. Raises ResolutionError when the
    lookup fails or times out.
    """
    host = host.strip()
    if is_ip_address(host):
        return host

    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(host, None, family=socket.AF_INET, type=socket.SOCK_STREAM),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise ResolutionError(f"Timed out resolving {host}") from None
    except OSError as exc:
        raise ResolutionError(f"Could not resolve {host}: {exc}") from exc

    for _family, _type, _proto, _canon, sockaddr in infos:
        return sockaddr[0]
    raise ResolutionError(f"No IPv4 address for {host}")


def _selected_dns_ip(settings: Settings) -> str | None:
    selected = settings.selected_dns_server.strip()
    if not selected:
        return None
    if selected.startswith("DoU:"):
        ip = selected[len("DoU:") :].strip()
        return ip or None
    if selected.startswith("DoH:"):
        url = selected.lower()
        for marker, ip in _DOH_BOOTSTRAP:
            if marker in url:
                return ip
        if settings.dns_bootstrap_ip:
            return settings.dns_bootstrap_ip
        logger.warning(
            "No bootstrap IP known for DoH resolver %s; set dns_bootstrap_ip "
            "to use it for the tunnel interface",
            selected,
        )
        return None
    return selected


def interface_dns_servers(settings: Settings) -> list[str]:
    """Plain resolver IPs to assign to the virtual interface.

    Custom entries come first, then the selected resolver. When neither
    yields an address the default Cloudflare pair is used.
    """
    servers: list[str] = []
    for entry in settings.custom_dns_servers:
        entry = entry.strip()
        if entry and entry not in servers:
            servers.append(entry)

    selected = _selected_dns_ip(settings)
    if selected and selected not in servers:
        servers.append(selected)

    if not servers:
        servers = list(DEFAULT_INTERFACE_DNS)
    return servers


async def tcp_probe(address: str, port: int, timeout: float = PROBE_TIMEOUT) -> float:
    """Measure TCP connect latency in milliseconds.

    Raises ProbeTimeout if the endpoint cannot be reached in time.
    """
    start = time.perf_counter()
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address, port), timeout=timeout
        )
    except asyncio.TimeoutError:
        raise ProbeTimeout(f"{address}:{port} did not answer within {timeout:g}s") from None
    except OSError as exc:
        raise ProbeTimeout(f"{address}:{port} unreachable: {exc}") from exc

    latency = (time.perf_counter() - start) * 1000
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        logger.debug("Error closing probe connection: %s", exc)
    return round(latency, 1)
