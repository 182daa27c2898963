#!/usr/bin/env python3
"""
Relay main entry point.

Allows the relay to be run as a module: python3 -m relay
"""

import logging
import logging.handlers
import signal
import sys

from relay.config import RelayConfig
from relay.service import RelayService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: RelayConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if not config.log_file:
        return
    try:
        # WatchedFileHandler reopens the file after external rotation
        handler = logging.handlers.WatchedFileHandler(config.log_file, mode="a")
    except OSError as e:
        logging.warning(f"Cannot open log file {config.log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def main() -> None:
    try:
        config = RelayConfig.load_config()
    except ValueError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(config)

    relay = None
    try:
        relay = RelayService(config)
        signal.signal(signal.SIGTERM, lambda signum, frame: relay.stop())
        relay.start()
        relay.run_forever()
    except KeyboardInterrupt:
        logging.info("Relay shutdown requested")
        if relay is not None:
            relay.stop()
        sys.exit(0)
    except Exception as e:
        logging.error(f"Relay failed to start: {e}", exc_info=True)
        if relay is not None:
            relay.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
