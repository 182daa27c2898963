"""
Configuration management for the relay.

Reads configuration from an env file and environment variables with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Default env file location
DEFAULT_ENV_FILE = Path("/etc/relay/relay.env")

# Static assets shipped with the package
DEFAULT_STATIC_DIR = Path(__file__).parent / "public"

_TRUE_VALUES = ("1", "true", "yes", "on")

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from the env file if it exists."""
    env_file = os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars
        logger.debug(f"Loaded env file {env_path}")


def _get_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


@dataclass
class RelayConfig:
    """Relay configuration loaded from env file and environment variables."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8001
    trust_proxy: bool = True
    static_dir: Path = field(default_factory=lambda: DEFAULT_STATIC_DIR)

    # Pipeline
    listener_bin: str = "jam-listener"
    ffmpeg_bin: str = "ffmpeg"
    bitrate: str = "128k"
    read_chunk_size: int = 4096

    # Teardown grace window after the last listener leaves
    grace_ms: int = 5000

    # Slow-client policy
    client_queue_size: int = 64
    client_timeout_ms: int = 5000
    max_clients: int = 100

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def grace_sec(self) -> float:
        return self.grace_ms / 1000.0

    @property
    def client_timeout_sec(self) -> float:
        return self.client_timeout_ms / 1000.0

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load env file first (if it exists)
        _load_env_file()

        listener_bin = os.getenv("RELAY_LISTENER_BIN") or os.getenv("JAM_LISTENER") or "jam-listener"

        static_dir_str = os.getenv("RELAY_STATIC_DIR")
        static_dir = Path(static_dir_str) if static_dir_str else DEFAULT_STATIC_DIR

        log_file = os.getenv("RELAY_LOG_FILE")
        if log_file == "":
            log_file = None

        config = cls(
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=_get_int("RELAY_PORT", "8001"),
            trust_proxy=_get_bool("RELAY_TRUST_PROXY", "true"),
            static_dir=static_dir,
            listener_bin=listener_bin,
            ffmpeg_bin=os.getenv("RELAY_FFMPEG_BIN", "ffmpeg"),
            bitrate=os.getenv("RELAY_BITRATE", "128k"),
            read_chunk_size=_get_int("RELAY_READ_CHUNK_SIZE", "4096"),
            grace_ms=_get_int("RELAY_GRACE_MS", "5000"),
            client_queue_size=_get_int("RELAY_CLIENT_QUEUE_SIZE", "64"),
            client_timeout_ms=_get_int("RELAY_CLIENT_TIMEOUT_MS", "5000"),
            max_clients=_get_int("RELAY_MAX_CLIENTS", "100"),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO"),
            log_file=log_file,
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.port < 0 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port} (must be 0-65535)")

        if not self.bitrate.endswith("k"):
            raise ValueError(f"Invalid bitrate format: {self.bitrate} (must end with 'k', e.g., '128k')")
        try:
            bitrate_value = int(self.bitrate[:-1])
        except ValueError:
            raise ValueError(f"Invalid bitrate: {self.bitrate}")
        if bitrate_value <= 0:
            raise ValueError(f"Invalid bitrate value: {bitrate_value}")

        if self.read_chunk_size <= 0:
            raise ValueError(f"Invalid read_chunk_size: {self.read_chunk_size} (must be positive)")

        if self.grace_ms < 0:
            raise ValueError(f"Invalid grace_ms: {self.grace_ms} (must be >= 0)")

        if self.client_queue_size <= 0:
            raise ValueError(f"Invalid client_queue_size: {self.client_queue_size} (must be positive)")

        if self.client_timeout_ms <= 0:
            raise ValueError(f"Invalid client_timeout_ms: {self.client_timeout_ms} (must be positive)")

        if self.max_clients <= 0:
            raise ValueError(f"Invalid max_clients: {self.max_clients} (must be positive)")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

        if not self.listener_bin:
            raise ValueError("listener_bin cannot be empty")
