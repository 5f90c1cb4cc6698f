"""
Device Agent - Keeps a device registered with the gateway and executes
the commands addressed to it.

Connection states:
    disconnected -> connecting -> connected -> registered
    connected | registered -> connecting   (transport dropped)
    any -> disconnected                    (stop())

The device is only "registered" after the gateway acknowledges a
registerDevice for this device id on the current connection.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Callable, List, Any, Dict

from .camera import CAMERA_STARTED, CAMERA_STOPPED, CameraSource, DeviceActions, LocalDeviceActions
from .config import AgentConfig
from .executor import CommandExecutor
from .frame_stream import FramePipeline
from .message import COMMAND, DEVICE_STATUS, REGISTER_DEVICE, REGISTERED, DeviceStatus, FramePacket
from .ws_client import BrokerClient

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REGISTERED = "registered"


_TRANSITIONS = {
    AgentState.DISCONNECTED: {AgentState.CONNECTING},
    AgentState.CONNECTING: {AgentState.CONNECTED, AgentState.DISCONNECTED},
    AgentState.CONNECTED: {AgentState.REGISTERED, AgentState.CONNECTING, AgentState.DISCONNECTED},
    AgentState.REGISTERED: {AgentState.CONNECTING, AgentState.DISCONNECTED},
}

StateListener = Callable[[AgentState, AgentState], None]


class ConnectionStateMachine:
    """
    Tracks the agent's connection state.

    transition() rejects (and logs) moves not in the transition table.
    Moving to the current state is a no-op that succeeds.
    """

    def __init__(self):
        self.state = AgentState.DISCONNECTED
        self.rejected = 0
        self._listeners: List[StateListener] = []

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, target: AgentState) -> bool:
        return target == self.state or target in _TRANSITIONS[self.state]

    def transition(self, target: AgentState) -> bool:
        """
        Move to `target`.

        Returns:
            True if the machine is in `target` afterwards
        """
        if target == self.state:
            return True
        if target not in _TRANSITIONS[self.state]:
            self.rejected += 1
            logger.warning(f"Rejected state transition {self.state.value} -> {target.value}")
            return False

        previous, self.state = self.state, target
        logger.info(f"Agent state: {previous.value} -> {target.value}")
        for listener in list(self._listeners):
            try:
                listener(previous, target)
            except Exception as e:
                logger.error(f"Error in state listener: {e}")
        return True


@dataclass
class AgentContext:
    """Mutable per-agent state shared by the agent and the command executor."""
    device_id: str
    client: Any
    actions: DeviceActions
    pipeline: FramePipeline
    machine: ConnectionStateMachine = field(default_factory=ConnectionStateMachine)

    def report(self, action: str, **fields: Any) -> DeviceStatus:
        """Emit one DeviceStatus record for this device."""
        status = DeviceStatus(device_id=self.device_id, action=action, fields=fields)
        self.client.emit(DEVICE_STATUS, status.to_dict())
        logger.debug(f"Reported status: {action}")
        return status

    def close(self) -> None:
        """Stop streaming and release device resources."""
        self.pipeline.stop()
        try:
            self.actions.close()
        except Exception as e:
            logger.error(f"Error releasing device resources: {e}")


class DeviceAgent:
    """
    Device side of the relay.

    Wires together:
    - BrokerClient (transport, reconnection with backoff)
    - ConnectionStateMachine
    - CommandExecutor over DeviceActions
    - FramePipeline fed by the device's frame source
    - Periodic liveness check
    """

    def __init__(
        self,
        config: AgentConfig,
        actions: Optional[DeviceActions] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize the device agent.

        Args:
            config: Agent configuration
            actions: Device side effects (local OpenCV camera if omitted)
            client: Gateway client (BrokerClient built from config if omitted)
        """
        self.config = config
        self.device_id = config.device_id

        if actions is None:
            actions = LocalDeviceActions(
                camera=CameraSource(camera_index=config.camera_index, rtsp_url=config.rtsp_url),
                languages=config.languages,
                captures_dir=config.captures_dir,
            )

        if client is None:
            client = BrokerClient(
                server_url=config.server_url,
                transports=config.transports,
                initial_backoff_seconds=config.initial_backoff,
                max_backoff_seconds=config.max_backoff,
                query={"deviceId": self.device_id},
            )
        client.on_connecting = self._on_connecting
        client.on_connected = self._on_connected
        client.on_disconnected = self._on_disconnected
        client.on(REGISTERED, self._on_registered)
        client.on(COMMAND, self._on_command)

        pipeline = FramePipeline(
            source=actions.frame_source,
            emit=self._emit_frame,
            device_id=self.device_id,
            interval=config.frame_interval,
            max_edge=config.max_edge,
            quality=config.jpeg_quality,
            event=config.frame_event,
        )

        self.context = AgentContext(
            device_id=self.device_id,
            client=client,
            actions=actions,
            pipeline=pipeline,
        )
        self.executor = CommandExecutor(self.context)

        actions.add_camera_listener(self._on_camera_event)
        actions.add_reload_listener(self._on_reload)

        # State
        self._running = False
        self._stopped = asyncio.Event()
        self._liveness_task: Optional[asyncio.Task] = None
        self.registrations = 0

    @property
    def client(self) -> Any:
        return self.context.client

    @property
    def machine(self) -> ConnectionStateMachine:
        return self.context.machine

    @property
    def state(self) -> AgentState:
        return self.context.machine.state

    @property
    def pipeline(self) -> FramePipeline:
        return self.context.pipeline

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Connect to the gateway and start the liveness check."""
        if self._running:
            return

        logger.info(f"Starting device agent {self.device_id}...")
        self._running = True
        self._stopped.clear()
        self.machine.transition(AgentState.CONNECTING)

        await self.client.start()
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        logger.info("Device agent started")

    async def stop(self) -> None:
        """User-initiated stop: no reconnection follows."""
        if not self._running:
            return

        logger.info("Stopping device agent...")
        self._running = False

        task, self._liveness_task = self._liveness_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.pipeline.stop()
        await self.client.stop()
        self.machine.transition(AgentState.DISCONNECTED)
        self.context.close()
        self._stopped.set()
        logger.info("Device agent stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def notify_foreground(self) -> None:
        """Device came back to the foreground: retry now if disconnected."""
        if not self._running:
            return
        if not self.client.connected:
            logger.info("Foreground transition while disconnected, reconnecting now")
            self.client.reconnect_now()

    def check_liveness(self) -> None:
        """
        One liveness check.

        Reconnects a client that reports itself disconnected and re-sends
        registerDevice for a connection that was never acknowledged.
        """
        if not self._running:
            return

        if not self.client.connected:
            logger.debug("Liveness check: client not connected, reconnecting")
            self.client.reconnect_now()
        elif self.state == AgentState.CONNECTED:
            logger.debug("Liveness check: not registered, re-sending registerDevice")
            self._register()

    async def _liveness_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.liveness_interval)
            try:
                self.check_liveness()
            except Exception as e:
                logger.error(f"Liveness check failed: {e}")

    def _register(self) -> None:
        self.client.emit(REGISTER_DEVICE, {"deviceId": self.device_id})

    async def _on_connecting(self) -> None:
        self.machine.transition(AgentState.CONNECTING)

    async def _on_connected(self) -> None:
        if self.machine.transition(AgentState.CONNECTED):
            self._register()

    async def _on_disconnected(self) -> None:
        target = AgentState.CONNECTING if self._running else AgentState.DISCONNECTED
        self.machine.transition(target)

    def _on_registered(self, data: Any) -> None:
        device_id = data.get("deviceId") if isinstance(data, dict) else None
        if device_id != self.device_id:
            logger.warning(f"Ignoring registration ack for {device_id!r}")
            return
        if self.state == AgentState.REGISTERED:
            return
        if self.machine.transition(AgentState.REGISTERED):
            self.registrations += 1
            logger.info(f"Registered as {self.device_id} (socket {data.get('socketId')})")

    def _on_command(self, data: Any) -> None:
        logger.debug(f"Command received: {data}")
        self.executor.execute(data)

    def _emit_frame(self, packet: FramePacket) -> None:
        self.client.emit(packet.event, packet.to_dict())

    def _on_camera_event(self, event: str) -> None:
        if event == CAMERA_STARTED and self.config.stream_on_camera_start:
            self.pipeline.start()
        elif event == CAMERA_STOPPED:
            self.pipeline.stop()

    def _on_reload(self) -> None:
        # Runs inside command execution; the reconnect is queued behind
        # the "reloading" status that is reported afterwards.
        asyncio.get_running_loop().call_soon(self.client.request_reconnect)

    def get_stats(self) -> Dict[str, Any]:
        """Get agent statistics."""
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "registrations": self.registrations,
            "rejected_transitions": self.machine.rejected,
            "client": self.client.get_stats(),
            "executor": self.executor.get_stats(),
            "pipeline": self.pipeline.get_stats(),
        }
