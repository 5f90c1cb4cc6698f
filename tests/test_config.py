"""Tests for gateway and client configuration."""

import pytest

from client_remote.config import (
    AgentConfig,
    ConfigError as ClientConfigError,
    ControllerConfig,
    EnvDefaults,
    load_device_identity,
    parse_transports,
)
from relay_gateway.config import ConfigError, GatewayConfig


class TestGatewayConfig:
    def test_defaults(self):
        cfg = GatewayConfig.from_env({})
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 3000
        assert cfg.allowed_origins == ["*"]
        assert cfg.ping_interval == 25.0
        assert cfg.ping_timeout == 60.0
        assert cfg.poll_timeout == 20.0
        assert cfg.queue_size == 256
        assert cfg.enable_mqtt is False
        assert cfg.log_level == "INFO"

    def test_from_env(self):
        cfg = GatewayConfig.from_env({
            "PORT": "8080",
            "ALLOWED_ORIGINS": "https://a.example, https://b.example",
            "PING_TIMEOUT": "5",
            "MQTT_HOST": "mqtt.local",
            "MQTT_TOPIC_PREFIX": "/canes/",
            "LOG_LEVEL": "debug",
        })
        assert cfg.port == 8080
        assert cfg.allowed_origins == ["https://a.example", "https://b.example"]
        assert cfg.ping_timeout == 5.0
        assert cfg.enable_mqtt is True
        assert cfg.mqtt_topic_prefix == "canes"
        assert cfg.log_level == "DEBUG"

    @pytest.mark.parametrize("env", [
        {"PORT": "http"},
        {"PING_INTERVAL": "soon"},
        {"POLL_TIMEOUT": "-1"},
        {"QUEUE_SIZE": "0"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ConfigError):
            GatewayConfig.from_env(env)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


class TestDeviceIdentity:
    def test_explicit_id_wins(self, tmp_path):
        path = tmp_path / "device_id"
        assert load_device_identity(str(path), explicit="cane-01") == "cane-01"
        assert not path.exists()

    def test_generated_id_is_persisted(self, tmp_path):
        path = tmp_path / "nested" / "device_id"
        first = load_device_identity(str(path))

        assert first.startswith("device-")
        assert len(first) == len("device-") + 8
        assert path.read_text().strip() == first
        assert load_device_identity(str(path)) == first

    def test_existing_file_is_used(self, tmp_path):
        path = tmp_path / "device_id"
        path.write_text("cane-07\n")
        assert load_device_identity(str(path)) == "cane-07"


class TestClientConfig:
    def test_parse_transports(self):
        assert parse_transports("polling, WebSocket") == ("polling", "websocket")
        assert parse_transports("websocket") == ("websocket",)

    @pytest.mark.parametrize("raw", ["", " , ", "carrier-pigeon"])
    def test_parse_transports_rejects(self, raw):
        with pytest.raises(ClientConfigError):
            parse_transports(raw)

    def test_agent_defaults(self):
        cfg = AgentConfig(device_id="cane-01")
        assert cfg.server_url == "http://127.0.0.1:3000"
        assert cfg.initial_backoff == 1.0
        assert cfg.max_backoff == 30.0
        assert cfg.liveness_interval == 5.0
        assert cfg.frame_interval == 0.5
        assert cfg.max_edge == 640
        assert cfg.jpeg_quality == 60
        assert cfg.languages == ("en", "fil")

    @pytest.mark.parametrize("kwargs", [
        {},
        {"device_id": "x", "jpeg_quality": 0},
        {"device_id": "x", "frame_interval": 0},
        {"device_id": "x", "initial_backoff": 10.0, "max_backoff": 1.0},
        {"device_id": "x", "frame_event": "gif"},
    ])
    def test_agent_rejects_invalid(self, kwargs):
        with pytest.raises(ClientConfigError):
            AgentConfig(**kwargs)

    def test_controller_rejects_bad_timeout(self):
        with pytest.raises(ClientConfigError):
            ControllerConfig(command_timeout=0)

    def test_env_defaults(self):
        defaults = EnvDefaults.from_env({"RELAY_SERVER": "http://relay:3000", "DEVICE_ID": "cane-01"})
        assert defaults.server_url == "http://relay:3000"
        assert defaults.device_id == "cane-01"
        assert defaults.transports == "polling,websocket"
