"""
Connection Registry for the rendezvous broker.

Handles:
- Live transport sessions (one Connection per session)
- Device identity -> connection set membership ("rooms")
- Cleanup of membership when a transport closes
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Optional, Dict, Set, List, Any

logger = logging.getLogger(__name__)

POLLING = "polling"
WEBSOCKET = "websocket"


class Connection:
    """
    One transport-level session.

    Outbound messages are queued and drained by whichever transport
    currently owns the session (a WebSocket writer task or long-poll
    requests), so an upgrade from polling to WebSocket keeps the queue.
    """

    def __init__(
        self,
        transport: str = WEBSOCKET,
        device_hint: Optional[str] = None,
        queue_size: int = 256,
    ):
        """
        Initialize a connection.

        Args:
            transport: Negotiated transport, "polling" or "websocket"
            device_hint: Device id supplied in the connect query string
            queue_size: Maximum number of queued outbound messages
        """
        self.sid = uuid.uuid4().hex
        self.transport = transport
        self.device_hint = device_hint
        self.alive = True
        self.connected_at = time.time()
        self.last_seen = time.monotonic()

        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=queue_size)
        self._upgraded = asyncio.Event()

        # Statistics
        self.messages_sent = 0
        self.messages_dropped = 0

    def __repr__(self) -> str:
        return f"Connection(sid={self.sid!r}, transport={self.transport!r}, alive={self.alive})"

    def send(self, event: str, data: Dict[str, Any]) -> bool:
        """
        Queue an event for delivery to this session.

        Non-blocking. Returns False if the connection is closed or its
        queue is full.
        """
        if not self.alive:
            return False

        message = json.dumps({"event": event, "data": data})
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.messages_dropped += 1
            logger.warning(f"Outbound queue full for {self.sid}, dropping {event}")
            return False

        self.messages_sent += 1
        return True

    def touch(self) -> None:
        """Record transport activity."""
        self.last_seen = time.monotonic()

    def upgrade(self) -> None:
        """Switch a polling session to the WebSocket transport."""
        self.transport = WEBSOCKET
        self._upgraded.set()
        self.touch()

    def close(self) -> None:
        """Mark the connection closed and wake any waiting reader."""
        if not self.alive:
            return
        self.alive = False
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def next_message(self) -> Optional[str]:
        """Wait for the next outbound message. None means closed."""
        if not self.alive and self._queue.empty():
            return None
        return await self._queue.get()

    async def poll(self, timeout: float) -> List[Dict[str, Any]]:
        """
        Long-poll for outbound messages.

        Waits up to `timeout` seconds for the first message, then drains
        whatever else is queued. Returns an empty list on timeout, on close
        or when the session is upgraded while waiting.
        """
        messages: List[Dict[str, Any]] = []
        if self._queue.empty():
            if not self.alive:
                return messages
            getter = asyncio.ensure_future(self._queue.get())
            upgraded = asyncio.ensure_future(self._upgraded.wait())
            try:
                done, _ = await asyncio.wait(
                    {getter, upgraded},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                upgraded.cancel()
            if getter not in done:
                getter.cancel()
                return messages
            first = getter.result()
            if first is None:
                return messages
            messages.append(json.loads(first))

        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                break
            messages.append(json.loads(item))
        return messages

    @property
    def pending(self) -> int:
        """Number of queued outbound messages."""
        return self._queue.qsize()


class ConnectionRegistry:
    """
    Tracks live connections and device identity membership.

    A device identity is a multicast group key: any number of connections
    may be registered under it. A connection belongs to at most one
    identity at a time. Membership is only removed by leave(), which the
    broker calls when a transport closes.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._groups: Dict[str, Set[Connection]] = {}
        self._membership: Dict[str, str] = {}

    # Live connections

    def add(self, connection: Connection) -> None:
        """Track a newly opened connection."""
        self._connections[connection.sid] = connection

    def remove(self, connection: Connection) -> None:
        """Forget a closed connection and drop its membership."""
        self._connections.pop(connection.sid, None)
        self.leave(connection)

    def get(self, sid: str) -> Optional[Connection]:
        """Look up a live connection by session id."""
        return self._connections.get(sid)

    def connections(self) -> List[Connection]:
        """Snapshot of all live connections."""
        return list(self._connections.values())

    # Membership

    def join(self, device_id: str, connection: Connection) -> None:
        """
        Add a connection to a device identity group.

        Joining the same group twice has no further effect. Joining a
        different group moves the connection out of its previous one.
        """
        current = self._membership.get(connection.sid)
        if current == device_id:
            return
        if current is not None:
            self.leave(connection)

        self._groups.setdefault(device_id, set()).add(connection)
        self._membership[connection.sid] = device_id
        logger.debug(f"{connection.sid} joined device:{device_id}")

    def leave(self, connection: Connection) -> None:
        """Remove a connection from whatever group it belongs to."""
        device_id = self._membership.pop(connection.sid, None)
        if device_id is None:
            return

        members = self._groups.get(device_id)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._groups[device_id]
        logger.debug(f"{connection.sid} left device:{device_id}")

    def members(self, device_id: str) -> Set[Connection]:
        """Current connections registered under a device identity."""
        return set(self._groups.get(device_id, ()))

    def group_of(self, connection: Connection) -> Optional[str]:
        """Device identity the connection is registered under, if any."""
        return self._membership.get(connection.sid)

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            "connections": len(self._connections),
            "devices": {device_id: len(members) for device_id, members in self._groups.items()},
        }
