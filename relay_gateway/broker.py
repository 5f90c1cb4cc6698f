"""
Rendezvous Broker - routes events between controllers and devices.

Handles:
- registerDevice: join a device identity group, ack with the session id
- sendCommand: forward to every member of the group, always ack the sender
- deviceStatus / previewFrame / videoFrame: broadcast to every other session
- Teardown: registry cleanup when a transport closes

The broker never stores domain data and never validates command contents.
Every handler runs synchronously, so one inbound message is applied to the
registry as a single unit on the event loop.
"""

import json
import logging
import time
from typing import Optional, Callable, Dict, Any, Tuple

from .registry import Connection, ConnectionRegistry, WEBSOCKET

logger = logging.getLogger(__name__)

# Event names
REGISTER_DEVICE = "registerDevice"
REGISTERED = "registered"
SEND_COMMAND = "sendCommand"
COMMAND = "command"
COMMAND_SENT = "commandSent"
DEVICE_STATUS = "deviceStatus"
PREVIEW_FRAME = "previewFrame"
VIDEO_FRAME = "videoFrame"
OPEN = "open"


def now_ms() -> int:
    """Wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def parse_envelope(raw: Any) -> Tuple[str, Any]:
    """
    Parse an inbound {"event": ..., "data": ...} envelope.

    Args:
        raw: JSON text or an already decoded object

    Returns:
        Tuple of (event, data)

    Raises:
        ValueError: If the envelope is not valid JSON or has no event name
    """
    envelope = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(envelope, dict):
        raise ValueError("envelope must be an object")
    event = envelope.get("event")
    if not isinstance(event, str) or not event:
        raise ValueError("envelope has no event name")
    return event, envelope.get("data")


def _device_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    device_id = data.get("deviceId")
    if not isinstance(device_id, str) or not device_id:
        return None
    return device_id


class RendezvousBroker:
    """
    Server-side hub owning the connection registry.

    Transports open and close connections through the broker and hand it
    every decoded inbound event via dispatch().
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        queue_size: int = 256,
        on_device_status: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Initialize the broker.

        Args:
            registry: Connection registry (a new one is created if omitted)
            queue_size: Outbound queue size for new connections
            on_device_status: Hook called with every relayed status record
        """
        self.registry = registry or ConnectionRegistry()
        self.queue_size = queue_size
        self.on_device_status = on_device_status

        self._handlers: Dict[str, Callable[[Connection, Any], None]] = {
            REGISTER_DEVICE: self._handle_register,
            SEND_COMMAND: self._handle_send_command,
            DEVICE_STATUS: self._handle_device_status,
            PREVIEW_FRAME: self._handle_preview_frame,
            VIDEO_FRAME: self._handle_video_frame,
        }

        # Statistics
        self._total_messages = 0
        self._dropped_messages = 0
        self._commands_dispatched = 0
        self._commands_delivered = 0

    # Lifecycle

    def open_connection(
        self,
        transport: str = WEBSOCKET,
        device_hint: Optional[str] = None,
    ) -> Connection:
        """Create and track a connection for a new transport session."""
        connection = Connection(
            transport=transport,
            device_hint=device_hint,
            queue_size=self.queue_size,
        )
        self.registry.add(connection)
        if device_hint:
            logger.info(f"Connection opened: {connection.sid} ({transport}, deviceId hint={device_hint})")
        else:
            logger.info(f"Connection opened: {connection.sid} ({transport})")
        return connection

    def close_connection(self, connection: Connection, reason: Any = None) -> None:
        """Tear down a connection. Always removes its registry membership."""
        group = self.registry.group_of(connection)
        self.registry.remove(connection)
        connection.close()
        if group:
            logger.info(f"Connection closed: {connection.sid} (device:{group}), reason: {reason}")
        else:
            logger.info(f"Connection closed: {connection.sid}, reason: {reason}")

    # Inbound events

    def dispatch(self, connection: Connection, event: str, data: Any) -> None:
        """Route one inbound event from a connection."""
        self._total_messages += 1
        connection.touch()

        handler = self._handlers.get(event)
        if handler is None:
            self._dropped_messages += 1
            logger.debug(f"Ignoring unknown event {event!r} from {connection.sid}")
            return
        handler(connection, data)

    def _handle_register(self, connection: Connection, data: Any) -> None:
        device_id = _device_id(data)
        if device_id is None:
            self._dropped_messages += 1
            logger.debug(f"Dropping registerDevice without deviceId from {connection.sid}")
            return

        self.registry.join(device_id, connection)
        logger.info(f"Device registered: {device_id} ({connection.sid})")
        connection.send(REGISTERED, {"deviceId": device_id, "socketId": connection.sid})

    def _handle_send_command(self, connection: Connection, data: Any) -> None:
        device_id = _device_id(data)
        command = data.get("command") if isinstance(data, dict) else None
        if device_id is None or not command or not isinstance(command, dict):
            self._dropped_messages += 1
            logger.debug(f"Dropping malformed sendCommand from {connection.sid}")
            return

        delivered = self.deliver_command(device_id, command)
        logger.info(f"Command to {device_id}: {command.get('type')} (delivered to {delivered})")

        # Acknowledge the dispatch attempt, not the delivery
        connection.send(COMMAND_SENT, {
            "deviceId": device_id,
            "command": command,
            "timestamp": now_ms(),
        })

    def deliver_command(self, device_id: str, command: Dict[str, Any]) -> int:
        """
        Forward a command verbatim to every member of a device group.

        Returns:
            Number of connections the command was queued for
        """
        self._commands_dispatched += 1
        delivered = 0
        for member in self.registry.members(device_id):
            if member.send(COMMAND, command):
                delivered += 1
        self._commands_delivered += delivered
        return delivered

    def _handle_device_status(self, connection: Connection, data: Any) -> None:
        if not isinstance(data, dict):
            self._dropped_messages += 1
            return

        status = dict(data, socketId=connection.sid)
        logger.debug(f"Device status from {connection.sid}: {status.get('action')}")
        self.broadcast(DEVICE_STATUS, status, exclude=connection)

        if self.on_device_status:
            try:
                self.on_device_status(status)
            except Exception as e:
                logger.error(f"Error in device status hook: {e}")

    def _handle_preview_frame(self, connection: Connection, data: Any) -> None:
        self._relay_frame(connection, PREVIEW_FRAME, data)

    def _handle_video_frame(self, connection: Connection, data: Any) -> None:
        self._relay_frame(connection, VIDEO_FRAME, data)

    def _relay_frame(self, connection: Connection, event: str, data: Any) -> None:
        if not isinstance(data, dict):
            self._dropped_messages += 1
            return
        self.broadcast(event, dict(data, socketId=connection.sid), exclude=connection)

    def broadcast(
        self,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        """
        Send an event to every live connection except `exclude`.

        Telemetry and frames are not scoped to a device's controllers:
        every connected party observes them.
        """
        sent = 0
        for connection in self.registry.connections():
            if connection is exclude:
                continue
            if connection.send(event, data):
                sent += 1
        return sent

    def get_stats(self) -> dict:
        """Get broker statistics."""
        stats = self.registry.get_stats()
        stats.update({
            "total_messages": self._total_messages,
            "dropped_messages": self._dropped_messages,
            "commands_dispatched": self._commands_dispatched,
            "commands_delivered": self._commands_delivered,
        })
        return stats
