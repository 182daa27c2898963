# relay/core/registry.py

import logging
import threading
from typing import Callable, Dict, List, Optional

from relay.core.channel import BroadcastChannel
from relay.core.endpoint import EndpointKey

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """
    Process-wide mapping from EndpointKey to BroadcastChannel.

    Channels are created on first reference and kept for the life of the
    process; only their pipelines come and go. Lookup-or-insert is a single
    critical section so racing requests share one channel.
    """

    def __init__(self, channel_factory: Callable[[EndpointKey], BroadcastChannel]):
        """
        Args:
            channel_factory: Called with an EndpointKey to build a new channel
        """
        self._channel_factory = channel_factory
        self._channels: Dict[EndpointKey, BroadcastChannel] = {}
        self._lock = threading.Lock()

    def get_or_create(self, key: EndpointKey) -> BroadcastChannel:
        with self._lock:
            channel = self._channels.get(key)
            if channel is None:
                channel = self._channel_factory(key)
                self._channels[key] = channel
                logger.info(f"Created channel for {key} ({len(self._channels)} endpoints known)")
            return channel

    def get(self, key: EndpointKey) -> Optional[BroadcastChannel]:
        with self._lock:
            return self._channels.get(key)

    def channels(self) -> List[BroadcastChannel]:
        with self._lock:
            return list(self._channels.values())

    def snapshot(self) -> List[dict]:
        """Stats of every known channel."""
        return [channel.stats() for channel in self.channels()]

    def shutdown(self) -> None:
        """Dispose every running pipeline. Channels stay registered."""
        channels = self.channels()
        for channel in channels:
            try:
                channel.shutdown()
            except Exception as e:
                logger.warning(f"Error shutting down channel {channel.key}: {e}")
        logger.info(f"All channels shut down ({len(channels)} endpoints)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def __contains__(self, key: EndpointKey) -> bool:
        with self._lock:
            return key in self._channels
