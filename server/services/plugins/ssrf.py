"""SSRF protection for outbound API_PROXY requests.

Blocks non-http(s) schemes, internal hostnames and every IP literal that
points into loopback, private, link-local, CGNAT, multicast, reserved or
cloud-metadata space. IP literals are recognized in any notation the
socket layer accepts (dotted, decimal, hex, octal, short forms, bracketed
IPv6 and IPv4-mapped IPv6), so "http://2130706433/" is caught like
"http://127.0.0.1/".
"""

import ipaddress
import re
import socket
from typing import Optional, Union
from urllib.parse import urlsplit

from services.engine.exceptions import PermanentExecutionError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ALLOWED_SCHEMES = frozenset(["http", "https"])

BLOCKED_HOSTNAMES = frozenset([
    "localhost",
    "metadata",
    "metadata.google.internal",
    "metadata.goog",
    "instance-data",
])

BLOCKED_SUFFIXES = (".internal", ".local", ".localhost")

# Cloud metadata endpoints (AWS/GCP/Azure, AWS IPv6, Alibaba)
METADATA_ADDRESSES = frozenset([
    ipaddress.ip_address("169.254.169.254"),
    ipaddress.ip_address("fd00:ec2::254"),
    ipaddress.ip_address("100.100.100.200"),
])

# Ranges the ipaddress flags do not cover on every Python version
EXTRA_BLOCKED_NETWORKS = (
    ipaddress.ip_network("100.64.0.0/10"),  # CGNAT
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("198.18.0.0/15"),
)

_LEGACY_IPV4_RE = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$", re.IGNORECASE)


class SSRFError(PermanentExecutionError):
    """Target URL rejected before any network call."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"URL is blocked by SSRF protection: {url} ({reason})")


def parse_ip(host: str) -> Optional[IPAddress]:
    """Interpret a hostname as an IP literal, or return None for real names."""
    host = host.strip("[]")
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if _LEGACY_IPV4_RE.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def is_blocked_ip(ip: IPAddress) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip in METADATA_ADDRESSES:
        return True
    if (ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast
            or ip.is_reserved or ip.is_unspecified):
        return True
    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in network for network in EXTRA_BLOCKED_NETWORKS)
    return False


def check_url(url: str) -> None:
    """Raise SSRFError if url must not be requested."""
    if not url or not isinstance(url, str):
        raise SSRFError(str(url), "empty URL")

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError as e:
        raise SSRFError(url, f"unparseable URL: {e}") from e

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise SSRFError(url, f"scheme {parts.scheme or 'none'!r} not allowed")
    if not hostname:
        raise SSRFError(url, "missing host")

    hostname = hostname.lower().rstrip(".")
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(BLOCKED_SUFFIXES):
        raise SSRFError(url, f"internal hostname {hostname}")

    ip = parse_ip(hostname)
    if ip is not None and is_blocked_ip(ip):
        raise SSRFError(url, f"blocked address {ip}")


def is_safe_url(url: str) -> bool:
    try:
        check_url(url)
    except SSRFError:
        return False
    return True
