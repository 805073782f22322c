"""Service endpoints and the small name-service messages built on them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import IntEnum


class Protocol(IntEnum):
    """Transport protocol of an endpoint."""

    TCP = 0
    UDP = 1
    SSL = 2


@dataclass(frozen=True)
class Endpoint:
    """An address a service listens on or a client connects to."""

    proto: Protocol = Protocol.TCP
    ip: str = ""
    port: int = 0

    def to_socket_addr(self) -> tuple[str, int]:
        """Return the ``(host, port)`` pair usable with socket APIs."""
        return (self.ip, self.port)


@dataclass
class ServiceName:
    """Name-service query for the endpoints of one service."""

    name: str = ""


@dataclass
class KeepaliveInfo:
    """Periodic registration of a service endpoint with the name service."""

    servicename: str = ""
    endpoint: Endpoint = field(default_factory=Endpoint)


@dataclass
class EndpointList:
    """Endpoints returned by the name service."""

    endpoints: list[Endpoint] = field(default_factory=list)


@dataclass
class Status:
    """Generic result status."""

    result: int = 0


# len("tcp://1.1.1.1:1")
_MIN_URL_LEN = 15

_SCHEMES = {
    "tcp": Protocol.TCP,
    "udp": Protocol.UDP,
    "ssl": Protocol.SSL,
}

_INT_PREFIX = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def _parse_port(text: str) -> int:
    match = _INT_PREFIX.match(text)
    if not match:
        raise ValueError(f"invalid port: {text!r}")
    value = int(match.group(1))
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"port out of range: {text!r}")
    return value


def endpoint_from_string(url: str) -> Endpoint:
    """Build an endpoint from a url such as ``tcp://127.0.0.1:8000``.

    Malformed urls give an endpoint without an address; a port that is
    not a number raises ``ValueError``.
    """
    if len(url) < _MIN_URL_LEN:
        return Endpoint()

    sep = url.rfind("/")
    if sep < 0:
        return Endpoint()

    proto = _SCHEMES.get(url[:3])
    if proto is None:
        return Endpoint()

    ipport = url[sep + 1:]
    colon = ipport.find(":")
    if colon < 0:
        return Endpoint(proto=proto)

    return Endpoint(proto, ipport[:colon], _parse_port(ipport[colon + 1:]))


def endpoint_to_string(ep: Endpoint) -> str:
    """Format an endpoint as ``scheme://ip:port``."""
    if ep.proto == Protocol.TCP:
        scheme = "tcp://"
    elif ep.proto == Protocol.UDP:
        scheme = "udp://"
    else:
        scheme = "ssl://"
    return f"{scheme}{ep.ip}:{ep.port}"


def is_valid_endpoint(ep: Endpoint) -> bool:
    """True when the endpoint has an address and a positive port."""
    return bool(ep.ip) and ep.port > 0