"""
Configuration management for camrelay.

Reads configuration from an optional .env file and environment variables,
with defaults matching the reference camera deployment.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/camrelay/camrelay.env")

ENV_PREFIX = "CAMRELAY_"

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(os.getenv("CAMRELAY_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {ENV_PREFIX}{name}: {raw} (must be an integer)")


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid {ENV_PREFIX}{name}: {raw} (must be a number)")


@dataclass
class RelayConfig:
    """camrelay configuration loaded from .env file and environment variables."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000

    # Camera source and transcoder
    source_url: str = "rtsp://192.168.0.110:8554/ID001"
    rtsp_transport: str = "tcp"
    ffmpeg_bin: str = "ffmpeg"
    frame_rate: int = 15
    quality: int = 5  # ffmpeg -q:v, lower is better
    read_chunk_size: int = 32768
    max_buffer_bytes: int = 8 * 1024 * 1024

    # Supervisor timing
    restart_delay_sec: float = 5.0
    control_restart_delay_sec: float = 1.0

    # Slow-subscriber policy
    max_clients: int = 100
    client_queue_size: int = 30
    client_timeout_ms: int = 2000

    # Logging
    log_level: str = "INFO"

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        _load_env_file()

        config = cls(
            host=_env("HOST", cls.host),
            port=_env_int("PORT", cls.port),
            source_url=_env("SOURCE_URL", cls.source_url),
            rtsp_transport=_env("RTSP_TRANSPORT", cls.rtsp_transport).lower(),
            ffmpeg_bin=_env("FFMPEG_BIN", cls.ffmpeg_bin),
            frame_rate=_env_int("FRAME_RATE", cls.frame_rate),
            quality=_env_int("QUALITY", cls.quality),
            read_chunk_size=_env_int("READ_CHUNK_SIZE", cls.read_chunk_size),
            max_buffer_bytes=_env_int("MAX_BUFFER_BYTES", cls.max_buffer_bytes),
            restart_delay_sec=_env_float("RESTART_DELAY_SEC", cls.restart_delay_sec),
            control_restart_delay_sec=_env_float(
                "CONTROL_RESTART_DELAY_SEC", cls.control_restart_delay_sec
            ),
            max_clients=_env_int("MAX_CLIENTS", cls.max_clients),
            client_queue_size=_env_int("CLIENT_QUEUE_SIZE", cls.client_queue_size),
            client_timeout_ms=_env_int("CLIENT_TIMEOUT_MS", cls.client_timeout_ms),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.port < 1 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port} (must be 1-65535)")

        if not self.source_url:
            raise ValueError("Source URL cannot be empty")

        if self.rtsp_transport not in ("tcp", "udp"):
            raise ValueError(
                f"Invalid RTSP transport: {self.rtsp_transport} (must be 'tcp' or 'udp')"
            )

        if not self.ffmpeg_bin:
            raise ValueError("ffmpeg binary cannot be empty")

        if self.frame_rate <= 0 or self.frame_rate > 120:
            raise ValueError(f"Invalid frame rate: {self.frame_rate} (must be 1-120)")

        # mjpeg encoder accepts qscale 2 (best) through 31 (worst)
        if self.quality < 2 or self.quality > 31:
            raise ValueError(f"Invalid quality: {self.quality} (must be 2-31)")

        if self.read_chunk_size <= 0:
            raise ValueError(f"Invalid read chunk size: {self.read_chunk_size} (must be > 0)")

        if self.max_buffer_bytes < self.read_chunk_size:
            raise ValueError(
                f"Invalid max buffer bytes: {self.max_buffer_bytes} "
                f"(must be >= read chunk size {self.read_chunk_size})"
            )

        if self.restart_delay_sec < 0:
            raise ValueError(f"Invalid restart delay: {self.restart_delay_sec} (must be >= 0)")

        if self.control_restart_delay_sec < 0:
            raise ValueError(
                f"Invalid control restart delay: {self.control_restart_delay_sec} (must be >= 0)"
            )

        if self.max_clients <= 0:
            raise ValueError(f"Invalid max clients: {self.max_clients} (must be > 0)")

        if self.client_queue_size <= 0:
            raise ValueError(f"Invalid client queue size: {self.client_queue_size} (must be > 0)")

        if self.client_timeout_ms <= 0:
            raise ValueError(f"Invalid client timeout: {self.client_timeout_ms} (must be > 0)")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )


def load_config() -> RelayConfig:
    """
    Load and validate configuration from environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return RelayConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
