# relay/service.py

import functools
import logging
import threading
from typing import Optional

from relay.config import RelayConfig
from relay.core.channel import BroadcastChannel
from relay.core.registry import ChannelRegistry
from relay.core.supervisor import ProcessSupervisor, build_transcoder_cmd
from relay.http.server import HTTPServer

logger = logging.getLogger(__name__)


class RelayService:
    def __init__(self, config: Optional[RelayConfig] = None):
        """
        Initialize RelayService.

        Args:
            config: Optional configuration (default: RelayConfig.load_config())
        """
        self.config = config if config is not None else RelayConfig.load_config()

        # Every channel spawns the same pipeline shape, addressed at its own endpoint
        supervisor_factory = functools.partial(
            ProcessSupervisor,
            listener_bin=self.config.listener_bin,
            transcoder_cmd=build_transcoder_cmd(self.config.ffmpeg_bin, self.config.bitrate),
            read_chunk_size=self.config.read_chunk_size,
        )
        channel_factory = functools.partial(
            BroadcastChannel,
            supervisor_factory=supervisor_factory,
            grace_sec=self.config.grace_sec,
        )
        self.registry = ChannelRegistry(channel_factory)

        self.http_server = HTTPServer(
            host=self.config.host,
            port=self.config.port,
            registry=self.registry,
            static_dir=self.config.static_dir,
            client_queue_size=self.config.client_queue_size,
            client_timeout_sec=self.config.client_timeout_sec,
            max_clients=self.config.max_clients,
            trust_proxy=self.config.trust_proxy,
        )

        self._stop_event = threading.Event()
        self.running = False

    def start(self) -> None:
        """Start the HTTP gateway. Pipelines start on demand."""
        logger.info("=== Relay starting ===")
        logger.info(
            f"Listener: {self.config.listener_bin}, transcoder: {self.config.ffmpeg_bin} @ {self.config.bitrate}, "
            f"grace window: {self.config.grace_ms}ms"
        )
        self.http_server.start()
        self.running = True

    def run_forever(self) -> None:
        """Block until stop() is called."""
        while not self._stop_event.wait(timeout=1.0):
            pass

    def stop(self) -> None:
        """Stop the gateway and dispose every running pipeline."""
        if not self.running:
            self._stop_event.set()
            return
        logger.info("=== Relay stopping ===")
        self.running = False
        self.http_server.stop()
        self.registry.shutdown()
        self._stop_event.set()
        logger.info("=== Relay stopped ===")
