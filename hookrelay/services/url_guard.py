"""SSRF guard for outbound webhook URLs.

Two layers, both fail closed:

* ``is_blocked_url`` is pure and synchronous. It rejects non-HTTP schemes and
  hostnames that look internal, first by text pattern and then by parsing IP
  literals with ``ipaddress``.
* ``UrlGuard.is_safe`` additionally resolves the hostname and rejects it if
  any resolved address falls in a blocked range. This narrows, but does not
  close, the DNS-rebinding window between the check and the actual request.
"""

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}

# ── Hostname patterns (fast-path pre-filter) ────────────
BLOCKED_HOST_PATTERNS: list[re.Pattern] = [
    re.compile(r"^127\."),
    re.compile(r"^10\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
    re.compile(r"^0\."),
    re.compile(r"^localhost$", re.IGNORECASE),
    re.compile(r"\.localhost$", re.IGNORECASE),
    re.compile(r"^::1$"),
    re.compile(r"^f[cd][0-9a-f]{0,2}:", re.IGNORECASE),
    re.compile(r"^fe[89ab][0-9a-f]:", re.IGNORECASE),
    re.compile(r"metadata\.google", re.IGNORECASE),
    re.compile(r"169\.254\.169\.254"),
    re.compile(r"metadata\.aws", re.IGNORECASE),
    re.compile(r"instance-data", re.IGNORECASE),
]

# ── Address ranges (authoritative check on IP literals / resolved IPs) ──
BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]

Resolver = Callable[[str], Awaitable[list[str]]]


NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")
IPV4_COMPAT_PREFIX = ipaddress.ip_network("::/96")


def _embedded_ipv4(ip: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    """IPv4 address carried inside an IPv6 one (mapped, compatible, 6to4, NAT64)."""
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    if ip.sixtofour is not None:
        return ip.sixtofour
    if ip in NAT64_PREFIX or (ip in IPV4_COMPAT_PREFIX and int(ip) > 1):
        return ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
    return None


def is_blocked_address(address: str) -> bool:
    """True if ``address`` is an IP in a range webhooks may never reach."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address):
        ip = _embedded_ipv4(ip) or ip
    if any(ip in net for net in BLOCKED_NETWORKS if net.version == ip.version):
        return True
    return ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_multicast


def _hostname(url: str) -> Optional[str]:
    """Lower-cased hostname of an absolute http(s) URL, or None if unusable."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if parsed.scheme not in ALLOWED_SCHEMES:
        return None
    host = parsed.host.lower().rstrip(".")
    return host or None


def _literal_address(host: str) -> Optional[str]:
    """Normalised IP for hosts the OS resolver would read as an address.

    Besides standard literals this covers the inet_aton forms, e.g.
    ``2130706433``, ``0x7f000001`` or ``017700000001`` for 127.0.0.1.
    """
    try:
        return str(ipaddress.ip_address(host.split("%", 1)[0]))
    except ValueError:
        pass
    if not re.fullmatch(r"[0-9a-fx.]+", host):
        return None
    try:
        packed = socket.inet_aton(host)
    except (OSError, ValueError):
        return None
    return str(ipaddress.IPv4Address(packed))


def url_host(url: str) -> str:
    """Host part of ``url`` for log lines (no path or query, which may carry tokens)."""
    try:
        return httpx.URL(url).host or "<no host>"
    except (httpx.InvalidURL, TypeError, ValueError):
        return "<invalid url>"


def is_blocked_url(url: str) -> bool:
    """Classify a webhook URL. Unparsable URLs are blocked."""
    host = _hostname(url)
    if host is None:
        return True
    if any(pattern.search(host) for pattern in BLOCKED_HOST_PATTERNS):
        return True
    address = _literal_address(host)
    if address is not None:
        return is_blocked_address(address)
    return False


async def resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class UrlGuard:
    """Per-delivery URL check, optionally backed by DNS resolution."""

    def __init__(
        self,
        resolve_dns: bool = True,
        resolver: Optional[Resolver] = None,
        resolve_timeout: float = 2.0,
    ):
        self.resolve_dns = resolve_dns
        self.resolve_timeout = resolve_timeout
        self._resolver = resolver or resolve_host

    async def is_safe(self, url: str) -> bool:
        if is_blocked_url(url):
            return False
        if not self.resolve_dns:
            return True

        host = _hostname(url)
        if _literal_address(host) is not None:
            return True
        try:
            addresses = await asyncio.wait_for(self._resolver(host), timeout=self.resolve_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out resolving webhook host {host}")
            return False
        except (OSError, UnicodeError) as e:
            logger.warning(f"Could not resolve webhook host {host}: {e}")
            return False
        if not addresses:
            return False
        blocked = [a for a in addresses if is_blocked_address(a)]
        if blocked:
            logger.warning(f"Webhook host {host} resolves to blocked address {blocked[0]}")
            return False
        return True
