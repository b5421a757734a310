from __future__ import annotations

import logging
import sys
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Runtime configuration, read from ``LIVEROOM_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="LIVEROOM_", env_file=".env", extra="ignore")

    # Hub / persistence
    host: str = "0.0.0.0"
    port: int = 8000
    database_path: Path = Path(__file__).resolve().parents[1] / "data" / "liveroom.db"
    hub_url: str = "ws://localhost:8000/realtime"
    topic_prefix: str = "live-class"
    subscribe_timeout_seconds: float = 10.0

    # WebRTC
    ice_servers: List[str] = DEFAULT_ICE_SERVERS

    # Capture devices handed to MediaPlayer
    camera_device: str = "/dev/video0"
    camera_format: str = "v4l2"
    microphone_device: str = "default"
    microphone_format: str = "pulse"
    display_device: str = ":0.0"
    display_format: str = "x11grab"

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a single console handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    # aiortc and aioice are very chatty at INFO
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
