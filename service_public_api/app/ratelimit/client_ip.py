"""
Client identity resolution for rate limiting.
"""

import ipaddress
from typing import Mapping, Optional

UNKNOWN_CLIENT = "unknown"

DEVELOPMENT_ENVIRONMENTS = frozenset({"local", "development"})


def _is_non_public(value: str) -> bool:
    """Loopback, private, link-local and IPv4-mapped private addresses."""
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return False
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return address.is_loopback or address.is_private or address.is_link_local


def resolve_client_ip(
    headers: Mapping[str, str],
    client_host: Optional[str] = None,
    *,
    env: str = "local",
    dev_client_ip: Optional[str] = None,
) -> str:
    """Best-effort client IP for use as a limiter key.

    Prefers the first hop of ``X-Forwarded-For``, then ``X-Real-IP``, then the
    socket peer, falling back to :data:`UNKNOWN_CLIENT`. In development,
    addresses that only exist on the local network are replaced by
    ``dev_client_ip`` when one is configured.
    """
    client_ip = None

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip() or None

    if client_ip is None:
        real_ip = headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            client_ip = real_ip.strip()

    if client_ip is None and client_host:
        client_ip = client_host

    if client_ip is None:
        client_ip = UNKNOWN_CLIENT

    if dev_client_ip and env.lower() in DEVELOPMENT_ENVIRONMENTS:
        if client_ip == UNKNOWN_CLIENT or _is_non_public(client_ip):
            return dev_client_ip

    return client_ip


def has_forwarded_identity(headers: Mapping[str, str]) -> bool:
    """Whether the request came through the proxy that stamps client identity."""
    return bool(headers.get("x-forwarded-for"))
