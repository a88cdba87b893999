# src/s3meter/client_ip.py
"""
Best-effort client address resolution.

The gateway usually sits behind a load balancer, so the first
X-Forwarded-For entry is preferred over the transport peer address.

KNOWN LIMITATION: X-Forwarded-For is set by the client side of the connection
and can be forged by anyone able to reach the gateway directly. The address
returned here is a metrics/billing signal (internal vs external egress), not
an authentication input. Access control must use ``peer_address`` instead.
"""

import ipaddress
from typing import Optional, Union

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def split_host_port(value: str) -> Optional[str]:
    """Return the host part of ``host:port`` or ``[host]:port``.

    Returns None if the value does not carry a port. A bare IPv6 address such
    as ``2001:db8::1`` is not mistaken for ``host:port``.
    """
    if value.startswith("["):
        end = value.find("]")
        if end == -1 or not value[end + 1 :].startswith(":"):
            return None
        return value[1:end]
    if value.count(":") == 1:
        host, _, _ = value.partition(":")
        return host
    return None


def parse_address(value: Optional[str]) -> Optional[Address]:
    """Parse an address that may carry a port. Returns None if invalid."""
    if not value:
        return None
    value = value.strip()
    host = split_host_port(value)
    if host is not None:
        value = host
    elif value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def forwarded_address(request) -> Optional[Address]:
    """Original client from the first X-Forwarded-For entry, if valid."""
    xff = request.headers.get("X-Forwarded-For", "")
    if not xff:
        return None
    # "client, proxy1, proxy2"
    first = xff.split(",", 1)[0]
    return parse_address(first)


def peer_address(request) -> Optional[Address]:
    """Transport-level peer address of the connection."""
    return parse_address(request.remote_addr)


def client_address(request) -> Optional[Address]:
    """Resolve the client address for a request.

    Precedence: first valid X-Forwarded-For entry, then the peer address,
    then None.
    """
    forwarded = forwarded_address(request)
    if forwarded is not None:
        return forwarded
    return peer_address(request)
