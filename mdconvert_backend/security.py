from __future__ import annotations

import ipaddress
import logging
import re

import httpx


logger = logging.getLogger(__name__)


BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "ip6-localhost",
        "ip6-loopback",
        "broadcasthost",
        "local",
    }
)

BLOCKED_HOSTNAME_SUFFIXES = (
    ".local",
    ".localhost",
    ".internal",
    ".home",
    ".lan",
    ".localdomain",
    ".intranet",
    ".corp",
    ".private",
)

_BLOCKED_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(net)
    for net in (
        "127.0.0.0/8",  # loopback
        "0.0.0.0/8",  # current network
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",  # link-local
        "100.64.0.0/10",  # carrier-grade NAT
        "192.0.0.0/24",  # IETF protocol assignments
        "192.0.2.0/24",  # TEST-NET-1
        "198.51.100.0/24",  # TEST-NET-2
        "203.0.113.0/24",  # TEST-NET-3
        "224.0.0.0/8",  # multicast
        "240.0.0.0/8",  # reserved
        "255.255.255.255/32",
    )
)

_BLOCKED_IPV6_NETWORKS = tuple(
    ipaddress.IPv6Network(net)
    for net in (
        "::1/128",
        "::/128",
        "fe80::/16",
        "fc00::/16",
        "fd00::/8",
        "ff00::/8",
    )
)

# IPv4 ranges still refused when smuggled inside an IPv4-mapped IPv6 literal.
_BLOCKED_MAPPED_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(net)
    for net in ("127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "169.254.0.0/16")
)

_NUMERIC_PART_RE = re.compile(r"^(?:0[xX][0-9a-fA-F]*|[0-9]+)$")


def normalize_hostname(hostname: str) -> str:
    """Lowercase a hostname and strip a single trailing dot (FQDN form)."""
    normalized = hostname.lower()
    if normalized.endswith("."):
        normalized = normalized[:-1]
    return normalized


def _parse_ipv4_part(part: str) -> int:
    if part[:2] in ("0x", "0X"):
        digits = part[2:]
        return int(digits, 16) if digits else 0
    if len(part) > 1 and part.startswith("0"):
        return int(part, 8)
    return int(part, 10)


def parse_ipv4_host(hostname: str) -> ipaddress.IPv4Address | None:
    """Parse a hostname the way browsers canonicalize IPv4 hosts.

    Accepts the numeric shorthands a URL parser folds into dotted-quad form
    (``2130706433``, ``0x7f.1``, ``0177.0.0.1``). Returns None when the host is
    not numeric and raises ValueError when it looks numeric but is invalid.
    """
    parts = hostname.split(".")
    if not parts or not _NUMERIC_PART_RE.match(parts[-1]):
        return None
    if len(parts) > 4 or any(not p or not _NUMERIC_PART_RE.match(p) for p in parts):
        raise ValueError(f"Invalid IPv4 host: {hostname}")

    numbers = [_parse_ipv4_part(p) for p in parts]
    if any(n > 255 for n in numbers[:-1]):
        raise ValueError(f"Invalid IPv4 host: {hostname}")
    if numbers[-1] >= 256 ** (5 - len(numbers)):
        raise ValueError(f"Invalid IPv4 host: {hostname}")

    value = numbers[-1]
    for index, number in enumerate(numbers[:-1]):
        value += number * 256 ** (3 - index)
    return ipaddress.IPv4Address(value)


def is_blocked_ip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv4Address):
        return any(address in net for net in _BLOCKED_IPV4_NETWORKS)
    if any(address in net for net in _BLOCKED_IPV6_NETWORKS):
        return True
    mapped = address.ipv4_mapped
    if mapped is not None:
        return any(mapped in net for net in _BLOCKED_MAPPED_IPV4_NETWORKS)
    return False


def is_blocked_hostname(hostname: str) -> bool:
    if hostname in BLOCKED_HOSTNAMES:
        return True
    for suffix in BLOCKED_HOSTNAME_SUFFIXES:
        if hostname.endswith(suffix) or hostname == suffix[1:]:
            return True
    return False


def is_url_safe(url: str) -> bool:
    """Decide whether fetching ``url`` from the server is allowed.

    Pure function: no DNS lookups, no network access. URLs are parsed with the
    same parser the fetcher uses so the checked host is the connected host.
    Called for the initial URL and again for every redirect hop.
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False

    if parsed.scheme != "https":
        logger.info("Blocked non-HTTPS URL: %s", parsed.scheme or "<none>")
        return False

    hostname = normalize_hostname(parsed.host)
    if not hostname:
        return False

    if is_blocked_hostname(hostname):
        logger.info("Blocked hostname: %s", hostname)
        return False

    if ":" in hostname:
        try:
            address = ipaddress.IPv6Address(hostname.split("%", 1)[0])
        except ValueError:
            return False
        if is_blocked_ip(address):
            logger.info("Blocked IPv6: %s", hostname)
            return False
        return True

    try:
        ipv4 = parse_ipv4_host(hostname)
    except ValueError:
        return False
    if ipv4 is not None and is_blocked_ip(ipv4):
        logger.info("Blocked IP: %s", hostname)
        return False

    return True
