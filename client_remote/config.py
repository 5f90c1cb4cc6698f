"""
Client configuration.

Settings for the device agent and the controller. Defaults come from
environment variables so the CLI flags can override them.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Mapping, Tuple

from .ws_client import POLLING, WEBSOCKET

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "http://127.0.0.1:3000"
DEFAULT_DEVICE_ID_FILE = "~/.config/remote-device/device_id"


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def parse_transports(raw: str) -> Tuple[str, ...]:
    """
    Parse a comma separated transport list ("polling,websocket").

    Raises:
        ConfigError: If the list is empty or names an unknown transport
    """
    transports = tuple(t.strip().lower() for t in raw.split(",") if t.strip())
    if not transports:
        raise ConfigError("at least one transport is required")
    unknown = [t for t in transports if t not in (POLLING, WEBSOCKET)]
    if unknown:
        raise ConfigError(f"unknown transport(s): {', '.join(unknown)}")
    return transports


def load_device_identity(path: str = DEFAULT_DEVICE_ID_FILE, explicit: Optional[str] = None) -> str:
    """
    Resolve the stable device identity.

    An explicit id wins. Otherwise the id stored at `path` is used; if there
    is none, a new `device-<hex>` id is generated and written there so it
    survives restarts.
    """
    if explicit:
        return explicit.strip()

    id_path = Path(path).expanduser()
    try:
        stored = id_path.read_text(encoding="utf-8").strip()
        if stored:
            return stored
    except FileNotFoundError:
        pass

    device_id = f"device-{uuid.uuid4().hex[:8]}"
    try:
        id_path.parent.mkdir(parents=True, exist_ok=True)
        id_path.write_text(device_id + "\n", encoding="utf-8")
        logger.info(f"Generated device identity {device_id} ({id_path})")
    except OSError as e:
        logger.warning(f"Could not persist device identity to {id_path}: {e}")
    return device_id


@dataclass
class ClientConfig:
    """Settings shared by the device agent and the controller."""
    server_url: str = DEFAULT_SERVER
    transports: Tuple[str, ...] = (POLLING, WEBSOCKET)
    initial_backoff: float = 1.0
    max_backoff: float = 30.0

    def __post_init__(self):
        if self.initial_backoff <= 0:
            raise ConfigError("initial backoff must be positive")
        if self.max_backoff < self.initial_backoff:
            raise ConfigError("max backoff must be >= initial backoff")


@dataclass
class AgentConfig(ClientConfig):
    """Device agent settings."""
    device_id: str = ""
    liveness_interval: float = 5.0
    frame_interval: float = 0.5
    max_edge: int = 640
    jpeg_quality: int = 60
    frame_event: str = "previewFrame"
    stream_on_camera_start: bool = True
    camera_index: int = 0
    rtsp_url: Optional[str] = None
    captures_dir: str = "captures"
    languages: Tuple[str, ...] = ("en", "fil")

    def __post_init__(self):
        super().__post_init__()
        if not self.device_id:
            raise ConfigError("device_id is required")
        if self.liveness_interval <= 0:
            raise ConfigError("liveness interval must be positive")
        if self.frame_interval <= 0:
            raise ConfigError("frame interval must be positive")
        if self.max_edge < 1:
            raise ConfigError("max edge must be >= 1")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigError("JPEG quality must be between 1 and 100")
        if self.frame_event not in ("previewFrame", "videoFrame"):
            raise ConfigError(f"unknown frame event: {self.frame_event}")
        if not self.languages:
            raise ConfigError("at least one language is required")


@dataclass
class ControllerConfig(ClientConfig):
    """Controller settings."""
    command_timeout: float = 10.0

    def __post_init__(self):
        super().__post_init__()
        if self.command_timeout <= 0:
            raise ConfigError("command timeout must be positive")


@dataclass
class EnvDefaults:
    """CLI defaults read from the environment."""
    server_url: str = DEFAULT_SERVER
    device_id: Optional[str] = None
    device_id_file: str = DEFAULT_DEVICE_ID_FILE
    transports: str = f"{POLLING},{WEBSOCKET}"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EnvDefaults":
        env = os.environ if env is None else env
        return cls(
            server_url=env.get("RELAY_SERVER") or DEFAULT_SERVER,
            device_id=env.get("DEVICE_ID") or None,
            device_id_file=env.get("DEVICE_ID_FILE") or DEFAULT_DEVICE_ID_FILE,
            transports=env.get("RELAY_TRANSPORTS") or f"{POLLING},{WEBSOCKET}",
        )
