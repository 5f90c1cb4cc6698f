#!/usr/bin/env python3
"""
Relay Gateway - Main Entry Point

This server is the rendezvous point between controllers and devices:
- Maps device identities to their live connections
- Forwards commands and acknowledges every dispatch attempt
- Broadcasts device telemetry and frames
- Optionally mirrors telemetry to MQTT and accepts MQTT commands

Environment Variables:
    HOST: Bind address (default: 0.0.0.0)
    PORT: Listen port (default: 3000)
    ALLOWED_ORIGINS: Comma separated CORS origins (default: *)
    PING_INTERVAL: Polling session reaper interval in seconds (default: 25)
    PING_TIMEOUT: Idle polling session timeout in seconds (default: 60)
    POLL_TIMEOUT: Long-poll wait in seconds (default: 20)
    MQTT_HOST: MQTT broker host (unset disables the MQTT bridge)
    MQTT_PORT: MQTT broker port (default: 1883)
    MQTT_TOPIC_PREFIX: Topic root (default: devices)
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    python -m relay_gateway.main
"""

import asyncio
import logging
import sys
from typing import Optional, Dict, Any

import uvicorn

from .broker import RendezvousBroker
from .config import GatewayConfig, ConfigError
from .mqtt_bridge import AsyncMQTTBridge
from .ws_server import GatewayServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RelayGateway:
    """
    Main gateway integrating the broker, its transports and MQTT.

    Architecture:
        Controller -> /ws or /poll -> RendezvousBroker -> Device(s)
        Device telemetry -> RendezvousBroker -> every other session (+ MQTT)
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self.broker = RendezvousBroker(
            queue_size=config.queue_size,
            on_device_status=self._on_device_status,
        )
        self.server = GatewayServer(config=config, broker=self.broker)
        self.mqtt_bridge: Optional[AsyncMQTTBridge] = None

    async def start(self) -> None:
        """Bring up the optional MQTT side channel. The HTTP app needs no startup."""
        if not self.config.enable_mqtt:
            logger.info("MQTT bridge disabled (MQTT_HOST not set)")
            return

        bridge = AsyncMQTTBridge(
            host=self.config.mqtt_host,
            port=self.config.mqtt_port,
            topic_prefix=self.config.mqtt_topic_prefix,
            on_command=self._on_mqtt_command,
        )
        self.mqtt_bridge = bridge
        if await bridge.start():
            logger.info(f"MQTT bridge up on {self.config.mqtt_host}:{self.config.mqtt_port}")
        else:
            # paho keeps retrying in the background; telemetry is mirrored once it connects
            logger.warning("MQTT bridge not connected yet, relay continues without it")

    async def stop(self) -> None:
        if self.mqtt_bridge is not None:
            await self.mqtt_bridge.stop()
            self.mqtt_bridge = None
        logger.info("Relay Gateway stopped")

    def _on_device_status(self, status: Dict[str, Any]) -> None:
        if self.mqtt_bridge is not None and self.mqtt_bridge.connected:
            self.mqtt_bridge.publish_status(status)

    def _on_mqtt_command(self, device_id: str, command: Dict[str, Any]) -> None:
        delivered = self.broker.deliver_command(device_id, command)
        logger.info(f"MQTT command {command.get('type')} for {device_id} reached {delivered} connection(s)")

    @property
    def app(self):
        return self.server.app

    def get_stats(self) -> dict:
        return {
            "server": self.server.get_stats(),
            "mqtt_bridge": self.mqtt_bridge.get_stats() if self.mqtt_bridge else {},
        }


async def serve(config: GatewayConfig) -> None:
    """Run uvicorn and the gateway side channels until SIGINT/SIGTERM."""
    gateway = RelayGateway(config)
    server = uvicorn.Server(uvicorn.Config(
        gateway.app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=False,
    ))

    # uvicorn installs its own SIGINT/SIGTERM handlers and sets should_exit
    await gateway.start()
    try:
        logger.info(f"Relay Gateway listening on {config.host}:{config.port}")
        await server.serve()
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise
    finally:
        await gateway.stop()


def main() -> None:
    try:
        config = GatewayConfig.from_env()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        sys.exit(1)


if __name__ == "__main__":
    main()
