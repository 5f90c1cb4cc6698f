"""
MQTT Bridge for telemetry mirroring and command ingress.

Handles:
- Publishing relayed device status records to <prefix>/<deviceId>/status
- Subscribing to <prefix>/+/command and dispatching through the broker
"""

import asyncio
import json
import logging
import threading
import time
import uuid
from typing import Optional, Callable, Dict, Any

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

CommandCallback = Callable[[str, Dict[str, Any]], None]


class MQTTBridge:
    """
    MQTT side channel of the gateway.

    paho runs its network loop on a background thread; inbound commands
    are handed to `on_command` on that thread.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        topic_prefix: str = "devices",
        on_command: Optional[CommandCallback] = None,
        connect_timeout: float = 5.0,
    ):
        """
        Initialize MQTT bridge.

        Args:
            host: MQTT broker host
            port: MQTT broker port
            topic_prefix: Root of the status and command topics
            on_command: Called with (device_id, command) for each MQTT command
            connect_timeout: Seconds start() waits for the CONNACK
        """
        self.host = host
        self.port = port
        self.topic_prefix = topic_prefix.strip("/")
        self.on_command = on_command
        self.connect_timeout = connect_timeout

        self._client: Optional[mqtt.Client] = None
        self._connected_event = threading.Event()

        # Statistics
        self._status_published = 0
        self._commands_received = 0
        self._last_publish_time: Optional[float] = None

    def status_topic(self, device_id: str) -> str:
        return f"{self.topic_prefix}/{device_id}/status"

    @property
    def command_filter(self) -> str:
        return f"{self.topic_prefix}/+/command"

    @property
    def connected(self) -> bool:
        return self._connected_event.is_set()

    def start(self) -> bool:
        """
        Start paho's network thread and wait up to connect_timeout for the CONNACK.

        The connection is made by the network thread, which keeps retrying
        (1s to 30s apart) while the broker is unreachable.

        Returns:
            True once the broker accepted the connection
        """
        if self._client is not None:
            return self.connected

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"relay-gateway-{uuid.uuid4().hex[:8]}",
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=1, max_delay=30)

        logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
        try:
            client.connect_async(self.host, self.port, keepalive=60)
        except ValueError as e:
            logger.error(f"Invalid MQTT broker settings: {e}")
            return False

        self._client = client
        client.loop_start()

        if not self._connected_event.wait(self.connect_timeout):
            logger.warning(f"No CONNACK from MQTT broker within {self.connect_timeout:.0f}s, retrying in background")
            return False
        return True

    def stop(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return

        client.loop_stop()
        client.disconnect()
        self._connected_event.clear()
        logger.info("MQTT bridge stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error(f"MQTT broker refused connection: {reason_code}")
            return

        # Subscribing here restores the subscription after paho reconnects
        client.subscribe(self.command_filter)
        self._connected_event.set()
        logger.info(f"Connected to MQTT broker, listening on {self.command_filter}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected_event.clear()
        if reason_code.is_failure:
            logger.warning(f"Lost MQTT connection: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_message(self, client, userdata, msg):
        self._commands_received += 1

        parts = msg.topic.split("/")
        if len(parts) < 3 or parts[-1] != "command" or not parts[-2]:
            logger.debug(f"Ignoring message on {msg.topic}")
            return
        device_id = parts[-2]

        try:
            command = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Invalid command JSON on {msg.topic}: {e}")
            return

        if not isinstance(command, dict) or not command:
            logger.warning(f"Ignoring non-object command on {msg.topic}")
            return

        if self.on_command:
            try:
                self.on_command(device_id, command)
            except Exception as e:
                logger.error(f"Error dispatching MQTT command: {e}")

    def publish_status(self, status: Dict[str, Any]) -> bool:
        """
        Mirror a relayed device status record (QoS 0, not retained).

        Returns:
            True if handed to paho
        """
        client = self._client
        if client is None or not self.connected:
            return False

        device_id = status.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            return False

        try:
            client.publish(self.status_topic(device_id), json.dumps(status), qos=0)
        except Exception as e:
            logger.error(f"Failed to publish status for {device_id}: {e}")
            return False

        self._status_published += 1
        self._last_publish_time = time.time()
        logger.debug(f"Published status for {device_id}: {status.get('action')}")
        return True

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "connected": self.connected,
            "status_published": self._status_published,
            "commands_received": self._commands_received,
            "last_publish_time": self._last_publish_time,
        }


class AsyncMQTTBridge:
    """
    asyncio front for MQTTBridge.

    Commands arriving on the paho thread are re-scheduled onto the event
    loop before reaching `on_command`.
    """

    def __init__(self, on_command: Optional[CommandCallback] = None, **kwargs):
        """Initialize with the same keyword arguments as MQTTBridge."""
        self._on_command = on_command
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._bridge = MQTTBridge(on_command=self._command_from_thread, **kwargs)

    def _command_from_thread(self, device_id: str, command: Dict[str, Any]) -> None:
        if self._loop is None or self._on_command is None:
            return
        self._loop.call_soon_threadsafe(self._on_command, device_id, command)

    async def start(self) -> bool:
        self._loop = asyncio.get_running_loop()
        return await self._loop.run_in_executor(None, self._bridge.start)

    async def stop(self) -> None:
        await asyncio.get_running_loop().run_in_executor(None, self._bridge.stop)

    def publish_status(self, status: Dict[str, Any]) -> bool:
        # paho's publish is thread-safe and only enqueues
        return self._bridge.publish_status(status)

    @property
    def connected(self) -> bool:
        return self._bridge.connected

    def get_stats(self) -> dict:
        return self._bridge.get_stats()
