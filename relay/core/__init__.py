"""
Relay core subsystem.

This package provides the per-endpoint broadcast machinery:
- ProcessSupervisor: Owns one capture | transcode pipeline
- BroadcastChannel: Reference-counted, debounced fan-out of one pipeline
- ChannelRegistry: Process-wide endpoint -> channel mapping
"""

from relay.core.endpoint import EndpointError, EndpointKey, parse_port, resolve_endpoint
from relay.core.supervisor import ProcessSupervisor, SupervisorState
from relay.core.channel import BroadcastChannel, ChannelState, Subscription
from relay.core.registry import ChannelRegistry

__all__ = [
    "EndpointError",
    "EndpointKey",
    "parse_port",
    "resolve_endpoint",
    "ProcessSupervisor",
    "SupervisorState",
    "BroadcastChannel",
    "ChannelState",
    "Subscription",
    "ChannelRegistry",
]
