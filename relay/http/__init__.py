"""
Relay HTTP gateway.

This package provides the HTTP server that maps listen requests onto
broadcast channels, and the per-listener write queue.
"""

from relay.http.client_sink import ClientSink, SinkClosedError
from relay.http.server import HTTPServer

__all__ = [
    "ClientSink",
    "HTTPServer",
    "SinkClosedError",
]
