"""
Gateway configuration.

Values come from environment variables; every setting has a default so the
gateway starts with no configuration at all.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List, Mapping


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _parse_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _parse_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


@dataclass
class GatewayConfig:
    """Runtime settings for the rendezvous gateway."""
    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    ping_interval: float = 25.0
    ping_timeout: float = 60.0
    poll_timeout: float = 20.0
    queue_size: int = 256
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_topic_prefix: str = "devices"
    log_level: str = "INFO"

    @property
    def enable_mqtt(self) -> bool:
        return bool(self.mqtt_host)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """
        Build configuration from environment variables.

        Raises:
            ConfigError: If a numeric variable cannot be parsed
        """
        env = os.environ if env is None else env

        origins_raw = env.get("ALLOWED_ORIGINS", "")
        origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or ["*"]

        queue_size = _parse_int(env, "QUEUE_SIZE", 256)
        if queue_size < 1:
            raise ConfigError("QUEUE_SIZE must be >= 1")

        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=_parse_int(env, "PORT", 3000),
            allowed_origins=origins,
            ping_interval=_parse_float(env, "PING_INTERVAL", 25.0),
            ping_timeout=_parse_float(env, "PING_TIMEOUT", 60.0),
            poll_timeout=_parse_float(env, "POLL_TIMEOUT", 20.0),
            queue_size=queue_size,
            mqtt_host=env.get("MQTT_HOST") or None,
            mqtt_port=_parse_int(env, "MQTT_PORT", 1883),
            mqtt_topic_prefix=env.get("MQTT_TOPIC_PREFIX", "devices").strip("/") or "devices",
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
