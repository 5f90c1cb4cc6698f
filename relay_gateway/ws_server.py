"""
Gateway HTTP/WebSocket server.

Handles:
- FastAPI WebSocket endpoint at /ws (streaming transport)
- Long-polling endpoints under /poll (fallback transport)
- Upgrade of a polling session to WebSocket (/ws?sid=...)
- Reaping of polling sessions that stopped polling
- Envelope parsing and forwarding to the rendezvous broker
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .broker import RendezvousBroker, parse_envelope, OPEN
from .config import GatewayConfig
from .registry import Connection, POLLING, WEBSOCKET

logger = logging.getLogger(__name__)


class GatewayServer:
    """
    Transport layer in front of the rendezvous broker.

    Features:
    - Two transport tiers sharing one Connection per session
    - Automatic upgrade from polling to WebSocket
    - Registry cleanup on every transport close
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        broker: Optional[RendezvousBroker] = None,
    ):
        """
        Initialize the gateway server.

        Args:
            config: Gateway configuration (defaults if omitted)
            broker: Broker instance (created from config if omitted)
        """
        self.config = config or GatewayConfig()
        self.broker = broker or RendezvousBroker(queue_size=self.config.queue_size)

        # Statistics
        self._invalid_messages = 0
        self._reaped_sessions = 0

        self._reaper_task: Optional[asyncio.Task] = None

        # FastAPI app
        self.app = FastAPI(title="Remote Device Relay Gateway", lifespan=self._lifespan)

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

        # Register routes
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        try:
            yield
        finally:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
            for connection in self.broker.registry.connections():
                self.broker.close_connection(connection, "server shutting down")

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", **self.get_stats()}

        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket):
            """WebSocket endpoint (streaming transport)."""
            await self._handle_websocket(websocket)

        @self.app.post("/poll")
        async def poll_handshake(deviceId: Optional[str] = None):
            """Open a polling session."""
            connection = self.broker.open_connection(POLLING, device_hint=deviceId)
            return {
                "sid": connection.sid,
                "upgrades": [WEBSOCKET],
                "pingInterval": self.config.ping_interval,
                "pingTimeout": self.config.ping_timeout,
                "pollTimeout": self.config.poll_timeout,
            }

        @self.app.get("/poll/{sid}")
        async def poll_receive(sid: str):
            """Long-poll for queued events."""
            connection = self._get_connection(sid)
            if connection.transport != POLLING:
                return {"events": [], "upgraded": True}

            connection.touch()
            events = await connection.poll(self.config.poll_timeout)
            connection.touch()
            return {"events": events, "upgraded": connection.transport != POLLING}

        @self.app.post("/poll/{sid}")
        async def poll_send(sid: str, request: Request):
            """Deliver one envelope or a list of envelopes."""
            connection = self._get_connection(sid)
            body = await request.body()
            try:
                payload = json.loads(body)
            except json.JSONDecodeError as e:
                self._invalid_messages += 1
                logger.warning(f"Invalid polling payload from {sid}: {e}")
                return {"accepted": 0}

            items = payload if isinstance(payload, list) else [payload]
            accepted = sum(1 for item in items if self._dispatch_raw(connection, item))
            return {"accepted": accepted}

        @self.app.delete("/poll/{sid}")
        async def poll_close(sid: str):
            """Close a polling session."""
            connection = self._get_connection(sid)
            self.broker.close_connection(connection, "client disconnect")
            return {"closed": True}

    def _get_connection(self, sid: str) -> Connection:
        connection = self.broker.registry.get(sid)
        if connection is None or not connection.alive:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session")
        return connection

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle an incoming WebSocket connection."""
        await websocket.accept()

        sid = websocket.query_params.get("sid")
        device_hint = websocket.query_params.get("deviceId")

        connection = self.broker.registry.get(sid) if sid else None
        if connection is not None and connection.alive and connection.transport == POLLING:
            connection.upgrade()
            logger.info(f"Connection upgraded to websocket: {connection.sid}")
        else:
            if sid:
                logger.info(f"Unknown session {sid} on upgrade, opening a new one")
            connection = self.broker.open_connection(WEBSOCKET, device_hint=device_hint)

        await websocket.send_text(json.dumps({
            "event": OPEN,
            "data": {"sid": connection.sid, "transport": WEBSOCKET},
        }))

        writer = asyncio.create_task(self._write_loop(websocket, connection))
        reason: Any = "transport close"

        try:
            await self._receive_messages(websocket, connection)
        except WebSocketDisconnect as e:
            reason = f"transport close ({e.code})"
        except Exception as e:
            logger.error(f"Error handling connection {connection.sid}: {e}")
            reason = "transport error"
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            self.broker.close_connection(connection, reason)

    async def _receive_messages(self, websocket: WebSocket, connection: Connection) -> None:
        """Receive and route messages from a WebSocket client."""
        while True:
            data = await websocket.receive_text()
            self._dispatch_raw(connection, data)

    async def _write_loop(self, websocket: WebSocket, connection: Connection) -> None:
        """Drain the connection's outbound queue onto the socket."""
        while True:
            message = await connection.next_message()
            if message is None:
                break
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.warning(f"Send to {connection.sid} failed: {e}")
                break

    def _dispatch_raw(self, connection: Connection, raw: Any) -> bool:
        """Parse an envelope and hand it to the broker. Malformed input is dropped."""
        try:
            event, data = parse_envelope(raw)
        except (ValueError, TypeError) as e:
            self._invalid_messages += 1
            logger.warning(f"Invalid message from {connection.sid}: {e}")
            return False

        self.broker.dispatch(connection, event, data)
        return True

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.ping_interval)
            self.reap_idle_sessions()

    def reap_idle_sessions(self) -> int:
        """
        Close polling sessions that have not polled within the ping timeout.

        Returns:
            Number of sessions closed
        """
        now = time.monotonic()
        reaped = 0
        for connection in self.broker.registry.connections():
            if connection.transport != POLLING:
                continue
            if now - connection.last_seen > self.config.ping_timeout:
                self.broker.close_connection(connection, "ping timeout")
                reaped += 1
        self._reaped_sessions += reaped
        return reaped

    def get_stats(self) -> dict:
        """Get server statistics."""
        stats = self.broker.get_stats()
        stats.update({
            "invalid_messages": self._invalid_messages,
            "reaped_sessions": self._reaped_sessions,
        })
        return stats


def create_app(
    config: Optional[GatewayConfig] = None,
    broker: Optional[RendezvousBroker] = None,
):
    """
    Create FastAPI application with the gateway server.

    Args:
        config: Gateway configuration
        broker: Optional pre-built broker

    Returns:
        Tuple of (FastAPI application, GatewayServer)
    """
    server = GatewayServer(config=config, broker=broker)
    return server.app, server
