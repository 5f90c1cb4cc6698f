"""
Controller Client - Operates devices through the gateway.

Sends commands addressed by device id and waits for the gateway's dispatch
acknowledgment. The acknowledgment confirms the dispatch attempt only: it
is sent even when no device with that id is connected.
"""

import asyncio
import json
import logging
from typing import Optional, Callable, List, Tuple, Dict, Any, Union

from .config import ControllerConfig
from .message import (
    COMMAND_SENT,
    DEVICE_STATUS,
    FRAME_EVENTS,
    SEND_COMMAND,
    Command,
    CommandAck,
    CommandType,
    DeviceStatus,
    FramePacket,
    MessageError,
)
from .ws_client import BrokerClient

logger = logging.getLogger(__name__)

StatusCallback = Callable[[DeviceStatus], Any]
FrameCallback = Callable[[FramePacket], Any]


class ControllerError(Exception):
    """Base class for controller failures."""


class NotConnectedError(ControllerError):
    """Raised when the gateway connection is not available."""


class CommandTimeout(ControllerError):
    """Raised when no dispatch acknowledgment arrives in time."""


class ControllerClient:
    """
    Controller side of the relay.

    Status and frame subscriptions receive the gateway's broadcast and are
    filtered locally by device id.
    """

    def __init__(self, config: ControllerConfig, client: Optional[Any] = None):
        """
        Initialize the controller.

        Args:
            config: Controller configuration
            client: Gateway client (BrokerClient built from config if omitted)
        """
        self.config = config

        if client is None:
            client = BrokerClient(
                server_url=config.server_url,
                transports=config.transports,
                initial_backoff_seconds=config.initial_backoff,
                max_backoff_seconds=config.max_backoff,
            )
        client.on_connected = self._on_connected
        client.on_disconnected = self._on_disconnected
        client.on(COMMAND_SENT, self._on_ack)
        client.on(DEVICE_STATUS, self._on_status)
        for event in FRAME_EVENTS:
            client.on(event, self._frame_handler(event))
        self.client = client

        self._pending: List[Tuple[str, Dict[str, Any], asyncio.Future]] = []
        self._status_subscribers: List[Tuple[Optional[str], StatusCallback]] = []
        self._frame_subscribers: List[Tuple[Optional[str], FrameCallback]] = []
        self._connected_event = asyncio.Event()

        # Statistics
        self.commands_sent = 0
        self.commands_acked = 0
        self.commands_timed_out = 0

    @property
    def connected(self) -> bool:
        return self.client.connected

    async def start(self) -> None:
        await self.client.start()

    async def stop(self) -> None:
        self._fail_pending(NotConnectedError("controller stopped"))
        await self.client.stop()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the gateway connection is up. Returns False on timeout."""
        if self.client.connected:
            return True
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def on_status(self, callback: StatusCallback, device_id: Optional[str] = None) -> None:
        """Subscribe to device telemetry, optionally for one device only."""
        self._status_subscribers.append((device_id, callback))

    def on_frame(self, callback: FrameCallback, device_id: Optional[str] = None) -> None:
        """Subscribe to streamed frames, optionally for one device only."""
        self._frame_subscribers.append((device_id, callback))

    async def send_command(
        self,
        device_id: str,
        command_type: Union[str, CommandType],
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CommandAck:
        """
        Send a command to every connection registered as `device_id`.

        Args:
            device_id: Target device identity
            command_type: Command type tag
            payload: Command payload
            timeout: Seconds to wait for the acknowledgment (config default if None)

        Returns:
            The gateway's dispatch acknowledgment

        Raises:
            NotConnectedError: If not connected, or the connection drops while waiting
            CommandTimeout: If no acknowledgment arrives in time
            TypeError: If the payload is not JSON serializable
        """
        if not device_id:
            raise ValueError("device_id is required")
        if not self.client.connected:
            raise NotConnectedError("not connected to gateway")

        timeout = self.config.command_timeout if timeout is None else timeout
        # Acks carry the command as the gateway decoded it, so match on the JSON form
        record = json.loads(json.dumps(Command.create(command_type, payload).to_dict()))
        future = asyncio.get_running_loop().create_future()
        entry = (device_id, record, future)
        self._pending.append(entry)

        try:
            if not self.client.emit(SEND_COMMAND, {"deviceId": device_id, "command": record}):
                raise ControllerError("send queue full")
            self.commands_sent += 1
            logger.info(f"Sent {record['type']} to {device_id}")
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self.commands_timed_out += 1
            raise CommandTimeout(f"no acknowledgment for {record['type']} to {device_id} within {timeout}s") from None
        finally:
            if entry in self._pending:
                self._pending.remove(entry)

    def _on_ack(self, data: Any) -> None:
        try:
            ack = CommandAck.from_dict(data)
        except MessageError as e:
            logger.warning(f"Invalid acknowledgment: {e}")
            return

        for device_id, record, future in self._pending:
            if future.done():
                continue
            if device_id == ack.device_id and record == ack.command:
                future.set_result(ack)
                self.commands_acked += 1
                logger.debug(f"Acknowledged {record['type']} to {device_id}")
                return

        logger.debug(f"Unmatched acknowledgment for {ack.device_id}")

    async def _on_status(self, data: Any) -> None:
        try:
            status = DeviceStatus.from_dict(data)
        except MessageError as e:
            logger.warning(f"Invalid device status: {e}")
            return
        await self._notify(self._status_subscribers, status.device_id, status)

    def _frame_handler(self, event: str) -> Callable[[Any], Any]:
        async def handle(data: Any) -> None:
            try:
                packet = FramePacket.from_dict(data, event=event)
            except MessageError as e:
                logger.warning(f"Invalid {event}: {e}")
                return
            await self._notify(self._frame_subscribers, packet.device_id, packet)
        return handle

    async def _notify(self, subscribers: List[Tuple[Optional[str], Callable]], device_id: str, item: Any) -> None:
        for wanted, callback in list(subscribers):
            if wanted is not None and wanted != device_id:
                continue
            try:
                result = callback(item)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in subscriber callback: {e}")

    async def _on_connected(self) -> None:
        self._connected_event.set()

    async def _on_disconnected(self) -> None:
        self._connected_event.clear()
        self._fail_pending(NotConnectedError("connection to gateway lost"))

    def _fail_pending(self, error: Exception) -> None:
        for _, _, future in self._pending:
            if not future.done():
                future.set_exception(error)

    def get_stats(self) -> dict:
        """Get controller statistics."""
        return {
            "connected": self.client.connected,
            "commands_sent": self.commands_sent,
            "commands_acked": self.commands_acked,
            "commands_timed_out": self.commands_timed_out,
            "pending": len(self._pending),
            "client": self.client.get_stats(),
        }
