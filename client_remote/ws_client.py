"""
Broker Client for gateway communication.

Handles:
- Transport negotiation (HTTP long-polling handshake, upgrade to WebSocket)
- Exponential backoff reconnection with an immediate-retry wake-up
- Named event handlers for inbound messages
- Message queue for decoupled sending
"""

import asyncio
import logging
import time
from typing import Optional, Callable, Awaitable, Dict, List, Any, Tuple, Sequence
from dataclasses import dataclass
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    ConnectionClosed,
    InvalidStatus,
    WebSocketException,
)

from .message import MessageError, OPEN, decode_event, encode_event

logger = logging.getLogger(__name__)

POLLING = "polling"
WEBSOCKET = "websocket"

Handler = Callable[[Any], Any]

# Send-queue marker: close the transport once earlier messages are sent
_RECONNECT = object()


class TransportClosed(Exception):
    """Raised when the gateway no longer knows the session."""


class Backoff:
    """
    Bounded exponential backoff.

    Delays start at `initial`, double after each failed attempt and never
    exceed `maximum`. reset() returns to `initial` after a successful
    connection.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 30.0, factor: float = 2.0):
        if initial <= 0:
            raise ValueError("initial backoff must be positive")
        if maximum < initial:
            raise ValueError("maximum backoff must be >= initial")
        if factor < 1.0:
            raise ValueError("backoff factor must be >= 1")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.current = initial
        self.attempts = 0

    def next_delay(self) -> float:
        """Delay before the next attempt; grows the following one."""
        delay = self.current
        self.current = min(self.current * self.factor, self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.current = self.initial
        self.attempts = 0


@dataclass
class ConnectionStats:
    """Statistics about the gateway connection."""
    connected: bool = False
    transport: Optional[str] = None
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    reconnect_attempts: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    messages_received: int = 0
    last_send_time: Optional[float] = None


class _WebSocketTransport:
    name = WEBSOCKET

    def __init__(self, ws: ClientConnection):
        self._ws = ws

    async def send(self, text: str) -> None:
        await self._ws.send(text)

    async def messages(self):
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosed:
            return

    async def close(self) -> None:
        await self._ws.close()


class _PollingTransport:
    name = POLLING

    def __init__(self, http: httpx.AsyncClient, sid: str, poll_timeout: float):
        self._http = http
        self._path = f"/poll/{sid}"
        self._poll_timeout = poll_timeout

    async def send(self, text: str) -> None:
        response = await self._http.post(
            self._path,
            content=text,
            headers={"Content-Type": "application/json"},
        )
        if response.status_code == 404:
            raise TransportClosed("session expired")
        response.raise_for_status()

    async def messages(self):
        while True:
            response = await self._http.get(self._path, timeout=self._poll_timeout + 10.0)
            if response.status_code == 404:
                return
            response.raise_for_status()
            body = response.json()
            for envelope in body.get("events", []):
                yield envelope
            if body.get("upgraded"):
                return

    async def close(self) -> None:
        try:
            await self._http.delete(self._path)
        except httpx.HTTPError:
            pass
        finally:
            await self._http.aclose()


class BrokerClient:
    """
    Async gateway client with automatic reconnection.

    Features:
    - Polling handshake with upgrade to WebSocket, or WebSocket only
    - Exponential backoff on connection failure, reset after success
    - reconnect_now() to skip the current backoff wait
    - Non-blocking emit() via a send queue
    """

    def __init__(
        self,
        server_url: str,
        transports: Sequence[str] = (POLLING, WEBSOCKET),
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        query: Optional[Dict[str, str]] = None,
        on_connecting: Optional[Callable[[], Awaitable[None]]] = None,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        on_disconnected: Optional[Callable[[], Awaitable[None]]] = None,
        open_timeout: float = 10.0,
    ):
        """
        Initialize broker client.

        Args:
            server_url: Gateway base URL (e.g., http://127.0.0.1:3000)
            transports: Allowed transports; polling first means handshake then upgrade
            initial_backoff_seconds: Initial backoff time
            max_backoff_seconds: Maximum backoff time between reconnect attempts
            query: Extra connect-time query parameters (e.g. deviceId)
            on_connecting: Callback before each connection attempt
            on_connected: Callback when connection is established
            on_disconnected: Callback when an established connection is lost
            open_timeout: Timeout for the handshake and WebSocket opening
        """
        transports = tuple(transports)
        if not transports or any(t not in (POLLING, WEBSOCKET) for t in transports):
            raise ValueError(f"Unsupported transports: {transports}")

        self.server_url = server_url.rstrip("/")
        self.transports = transports
        self.query = dict(query or {})
        self.on_connecting = on_connecting
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.open_timeout = open_timeout
        self.backoff = Backoff(initial_backoff_seconds, max_backoff_seconds)

        # Connection state
        self._transport = None
        self._connected = False
        self._running = False
        self._wake = asyncio.Event()
        self.sid: Optional[str] = None

        # Event handlers
        self._handlers: Dict[str, List[Handler]] = {}

        # Message queue
        self._send_queue: asyncio.Queue = asyncio.Queue(maxsize=100)

        # Statistics
        self.stats = ConnectionStats()

        # Tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected and self._transport is not None

    @property
    def transport_name(self) -> Optional[str]:
        return self._transport.name if self._transport is not None else None

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler (sync or async) for an inbound event."""
        self._handlers.setdefault(event, []).append(handler)

    async def start(self) -> None:
        """Start the client and connection tasks."""
        if self._running:
            return

        self._running = True

        self._connect_task = asyncio.create_task(self._connection_loop())
        self._send_task = asyncio.create_task(self._send_loop())

        logger.info(f"Broker client started, connecting to {self.server_url}")

    async def stop(self) -> None:
        """Stop the client. No reconnection follows."""
        if not self._running:
            return

        logger.info("Broker client stopping...")
        self._running = False
        self._wake.set()

        # Signal send loop to exit
        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        for task in (self._connect_task, self._send_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._connect_task = None
        self._send_task = None

        await self._close_transport()
        self._connected = False
        logger.info("Broker client stopped")

    def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue an event for sending.

        Non-blocking. Returns False if the queue is full. Messages queued
        while disconnected are dropped by the send loop.
        """
        try:
            self._send_queue.put_nowait(encode_event(event, data))
            return True
        except asyncio.QueueFull:
            self.stats.messages_failed += 1
            logger.warning(f"Send queue full, dropping {event}")
            return False

    def reconnect_now(self) -> None:
        """Skip the pending backoff wait if not connected."""
        if not self.connected:
            self._wake.set()

    async def reconnect(self) -> None:
        """Drop the current transport; the connection loop reconnects at once."""
        self._wake.set()
        await self._close_transport()

    def request_reconnect(self) -> bool:
        """Queue a reconnect behind every message emitted so far."""
        try:
            self._send_queue.put_nowait(_RECONNECT)
            return True
        except asyncio.QueueFull:
            logger.warning("Send queue full, dropping reconnect request")
            return False

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._running:
            try:
                await self._connect()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connection error: {e}")

            if not self._running:
                break

            delay = self.backoff.next_delay()
            self.stats.reconnect_attempts += 1
            logger.info(f"Reconnecting in {delay:.1f}s...")
            await self._wait_backoff(delay)

    async def _wait_backoff(self, delay: float) -> None:
        if not self._wake.is_set():
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self._wake.clear()

    async def _connect(self) -> None:
        """Negotiate a transport and pump inbound events until it closes."""
        if self.on_connecting:
            await self.on_connecting()

        logger.info(f"Connecting to {self.server_url} via {'/'.join(self.transports)}...")
        transport, sid = await self._open_transport()

        self._transport = transport
        self.sid = sid
        self._connected = True
        self._wake.clear()
        self.backoff.reset()
        self.stats.connected = True
        self.stats.transport = transport.name
        self.stats.connect_time = time.time()

        logger.info(f"Connected to gateway (sid={sid}, transport={transport.name})")

        try:
            if self.on_connected:
                await self.on_connected()

            async for raw in transport.messages():
                await self._dispatch(raw)
        finally:
            self._connected = False
            self.stats.connected = False
            self.stats.disconnect_time = time.time()
            await self._close_transport()

            logger.warning("Disconnected from gateway")
            if self.on_disconnected:
                await self.on_disconnected()

    async def _open_transport(self) -> Tuple[Any, str]:
        if POLLING not in self.transports:
            return await self._open_websocket(self._ws_url())

        http = httpx.AsyncClient(base_url=self.server_url, timeout=self.open_timeout)
        try:
            response = await http.post("/poll", params=self.query)
            response.raise_for_status()
            handshake = response.json()
            sid = handshake["sid"]
        except Exception:
            await http.aclose()
            raise

        if WEBSOCKET in self.transports and WEBSOCKET in handshake.get("upgrades", []):
            try:
                transport, ws_sid = await self._open_websocket(self._ws_url(sid=sid))
            except (OSError, WebSocketException, asyncio.TimeoutError, MessageError) as e:
                logger.warning(f"WebSocket upgrade failed, staying on polling: {e}")
            else:
                await http.aclose()
                return transport, ws_sid

        poll_timeout = float(handshake.get("pollTimeout", 20.0))
        return _PollingTransport(http, sid, poll_timeout), sid

    async def _open_websocket(self, url: str) -> Tuple[_WebSocketTransport, str]:
        try:
            ws = await websockets.connect(
                url,
                open_timeout=self.open_timeout,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
                max_size=4 * 1024 * 1024,
            )
        except InvalidStatus as e:
            logger.error(f"Gateway rejected WebSocket: {e.response.status_code}")
            raise
        except ConnectionRefusedError:
            logger.error("Connection refused - is the gateway running?")
            raise

        try:
            first = await asyncio.wait_for(ws.recv(), timeout=self.open_timeout)
            event, data = decode_event(first)
            if event != OPEN or not isinstance(data, dict) or "sid" not in data:
                raise MessageError(f"expected open event, got {event!r}")
        except BaseException:
            await ws.close()
            raise

        return _WebSocketTransport(ws), data["sid"]

    def _ws_url(self, sid: Optional[str] = None) -> str:
        parts = urlsplit(self.server_url)
        scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
        query = dict(self.query)
        if sid:
            query["sid"] = sid
        path = parts.path.rstrip("/") + "/ws"
        return urlunsplit((scheme, parts.netloc, path, urlencode(query), ""))

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")

    async def _dispatch(self, raw: Any) -> None:
        """Decode an inbound envelope and run its handlers."""
        try:
            event, data = decode_event(raw)
        except MessageError as e:
            logger.warning(f"Invalid message from gateway: {e}")
            return

        self.stats.messages_received += 1
        logger.debug(f"Received {event} from gateway")

        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}")

    async def _send_loop(self) -> None:
        """Process outgoing message queue."""
        while self._running:
            try:
                message = await self._send_queue.get()

                # None is shutdown signal
                if message is None:
                    break

                if message is _RECONNECT:
                    logger.info("Reconnect requested")
                    await self.reconnect()
                    continue

                transport = self._transport
                if self.connected and transport is not None:
                    try:
                        await transport.send(message)
                        self.stats.messages_sent += 1
                        self.stats.last_send_time = time.time()
                    except (ConnectionClosed, WebSocketException, httpx.HTTPError, TransportClosed) as e:
                        self.stats.messages_failed += 1
                        logger.warning(f"Send failed: {e}")
                else:
                    # Not connected, drop message
                    self.stats.messages_failed += 1

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Send loop error: {e}")

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "connected": self.connected,
            "sid": self.sid,
            "transport": self.transport_name,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "reconnect_attempts": self.stats.reconnect_attempts,
            "messages_sent": self.stats.messages_sent,
            "messages_failed": self.stats.messages_failed,
            "messages_received": self.stats.messages_received,
            "last_send_time": self.stats.last_send_time,
            "queue_size": self._send_queue.qsize(),
        }
