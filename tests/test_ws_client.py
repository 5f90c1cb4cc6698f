"""Tests for the broker client: backoff, dispatch, sending and reconnection."""

import asyncio
import json

import pytest

from client_remote.ws_client import Backoff, BrokerClient, POLLING, WEBSOCKET


class FakeTransport:
    name = WEBSOCKET

    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent = []
        self.closed = False
        self._release = asyncio.Event()

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def messages(self):
        for item in self.inbound:
            yield item
        await self._release.wait()

    async def close(self):
        self.closed = True
        self._release.set()


async def _eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestBackoff:
    def test_doubles_up_to_cap(self):
        backoff = Backoff(initial=1.0, maximum=30.0)
        delays = [backoff.next_delay() for _ in range(8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    def test_never_below_initial(self):
        backoff = Backoff(initial=0.5, maximum=2.0)
        assert all(backoff.next_delay() >= 0.5 for _ in range(10))

    def test_reset(self):
        backoff = Backoff(initial=1.0, maximum=30.0)
        for _ in range(4):
            backoff.next_delay()
        backoff.reset()
        assert backoff.next_delay() == 1.0
        assert backoff.attempts == 1

    @pytest.mark.parametrize("kwargs", [
        {"initial": 0},
        {"initial": 5.0, "maximum": 1.0},
        {"factor": 0.5},
    ])
    def test_rejects_bad_parameters(self, kwargs):
        with pytest.raises(ValueError):
            Backoff(**kwargs)


class TestUrls:
    def test_ws_url_from_http(self):
        client = BrokerClient("http://127.0.0.1:3000/", query={"deviceId": "cane-01"})
        assert client._ws_url() == "ws://127.0.0.1:3000/ws?deviceId=cane-01"

    def test_ws_url_with_sid(self):
        client = BrokerClient("https://relay.example.com")
        assert client._ws_url(sid="abc") == "wss://relay.example.com/ws?sid=abc"

    def test_rejects_unknown_transport(self):
        with pytest.raises(ValueError):
            BrokerClient("http://127.0.0.1:3000", transports=("carrier-pigeon",))

    def test_default_transports(self):
        assert BrokerClient("http://127.0.0.1:3000").transports == (POLLING, WEBSOCKET)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        client = BrokerClient("http://127.0.0.1:3000")
        seen = []

        async def async_handler(data):
            seen.append(("async", data))

        client.on("command", lambda data: seen.append(("sync", data)))
        client.on("command", async_handler)

        await client._dispatch('{"event": "command", "data": {"type": "PING"}}')
        assert seen == [("sync", {"type": "PING"}), ("async", {"type": "PING"})]
        assert client.stats.messages_received == 1

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_others(self):
        client = BrokerClient("http://127.0.0.1:3000")
        seen = []

        def broken(data):
            raise RuntimeError("boom")

        client.on("command", broken)
        client.on("command", seen.append)

        await client._dispatch({"event": "command", "data": {"type": "PING"}})
        assert seen == [{"type": "PING"}]

    @pytest.mark.asyncio
    async def test_malformed_message_is_ignored(self):
        client = BrokerClient("http://127.0.0.1:3000")
        await client._dispatch("not json")
        assert client.stats.messages_received == 0


class TestSending:
    def test_emit_full_queue(self):
        client = BrokerClient("http://127.0.0.1:3000")
        for _ in range(client._send_queue.maxsize):
            assert client.emit("deviceStatus", {}) is True
        assert client.emit("deviceStatus", {}) is False
        assert client.stats.messages_failed == 1

    @pytest.mark.asyncio
    async def test_messages_dropped_while_disconnected(self):
        client = BrokerClient("http://127.0.0.1:3000")
        client._running = True
        task = asyncio.create_task(client._send_loop())

        client.emit("deviceStatus", {"action": "pong"})
        assert await _eventually(lambda: client.stats.messages_failed == 1)

        client._send_queue.put_nowait(None)
        await task

    @pytest.mark.asyncio
    async def test_reconnect_request_follows_queued_messages(self):
        client = BrokerClient("http://127.0.0.1:3000")
        transport = FakeTransport()
        client._transport = transport
        client._connected = True
        client._running = True
        task = asyncio.create_task(client._send_loop())

        client.emit("deviceStatus", {"action": "reloading"})
        client.request_reconnect()
        client.emit("deviceStatus", {"action": "late"})

        assert await _eventually(lambda: transport.closed)
        assert transport.sent == [{"event": "deviceStatus", "data": {"action": "reloading"}}]
        assert client._transport is None

        client._send_queue.put_nowait(None)
        await task


class TestReconnection:
    @pytest.mark.asyncio
    async def test_backoff_grows_then_resets_on_connect(self):
        client = BrokerClient(
            "http://127.0.0.1:3000",
            initial_backoff_seconds=0.01,
            max_backoff_seconds=0.05,
        )
        attempts = []
        transport = FakeTransport()

        async def fake_open():
            attempts.append(1)
            if len(attempts) < 3:
                raise OSError("connection refused")
            return transport, "sid-ok"

        client._open_transport = fake_open
        await client.start()
        try:
            assert await _eventually(lambda: client.connected)
            assert client.sid == "sid-ok"
            assert client.backoff.attempts == 0
            assert client.backoff.current == 0.01
            assert client.stats.reconnect_attempts == 2
        finally:
            await client.stop()
        assert transport.closed

    @pytest.mark.asyncio
    async def test_reconnect_now_skips_backoff_wait(self):
        client = BrokerClient("http://127.0.0.1:3000", initial_backoff_seconds=30.0, max_backoff_seconds=60.0)
        attempts = []

        async def failing_open():
            attempts.append(1)
            raise OSError("unreachable")

        client._open_transport = failing_open
        await client.start()
        try:
            assert await _eventually(lambda: len(attempts) == 1)
            await asyncio.sleep(0.05)
            assert len(attempts) == 1

            client.reconnect_now()
            assert await _eventually(lambda: len(attempts) == 2, timeout=1.0)
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_lifecycle_callbacks(self):
        events = []

        async def on_connecting():
            events.append("connecting")

        async def on_connected():
            events.append("connected")

        async def on_disconnected():
            events.append("disconnected")

        client = BrokerClient(
            "http://127.0.0.1:3000",
            initial_backoff_seconds=5.0,
            on_connecting=on_connecting,
            on_connected=on_connected,
            on_disconnected=on_disconnected,
        )
        transports = [FakeTransport(inbound=[{"event": "registered", "data": {"deviceId": "cane-01"}}])]
        received = []
        client.on("registered", received.append)

        async def fake_open():
            if transports:
                return transports.pop(0), "sid-1"
            return FakeTransport(), "sid-2"

        client._open_transport = fake_open
        await client.start()
        assert await _eventually(lambda: received)

        await client.reconnect()
        assert await _eventually(lambda: "disconnected" in events)
        await client.stop()

        assert events[:3] == ["connecting", "connected", "disconnected"]
        assert received == [{"deviceId": "cane-01"}]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        client = BrokerClient("http://127.0.0.1:3000")
        await client.stop()
        assert client.connected is False
