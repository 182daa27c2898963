# relay/core/endpoint.py

import logging
import socket
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


class EndpointError(ValueError):
    """Raised when a requested endpoint cannot be parsed or resolved."""


@dataclass(frozen=True)
class EndpointKey:
    """Canonical identity of one upstream audio source."""
    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


def parse_port(raw: str) -> int:
    """
    Parse a port number taken from a request path.

    Args:
        raw: Port as it appeared in the URL

    Returns:
        Port number in range 1-65535

    Raises:
        EndpointError: If raw is not a decimal integer in range
    """
    # isdigit() alone also accepts non-ASCII digits such as "²"
    if not raw or not raw.isascii() or not raw.isdigit():
        raise EndpointError(f"Invalid port: {raw!r}")
    port = int(raw)
    if port < MIN_PORT or port > MAX_PORT:
        raise EndpointError(f"Invalid port: {port} (must be {MIN_PORT}-{MAX_PORT})")
    return port


def resolve_endpoint(host: str, port: int) -> EndpointKey:
    """
    Resolve a human-supplied host into a canonical EndpointKey.

    Only IPv4 is considered; the first address returned by the resolver wins,
    so "localhost" and "127.0.0.1" map to the same key.

    Raises:
        EndpointError: If the host cannot be resolved
    """
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise EndpointError(f"Cannot resolve host {host!r}: {e}") from e
    if not infos:
        raise EndpointError(f"Cannot resolve host {host!r}: no IPv4 address")
    address = infos[0][4][0]
    logger.debug(f"Resolved {host} -> {address}")
    return EndpointKey(address=address, port=port)
