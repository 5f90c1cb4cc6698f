"""
Pytest configuration and shared fixtures
"""
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

# Add the repository root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from client_remote.camera import DeviceActions  # noqa: E402


def make_frame(height: int = 480, width: int = 640, channels: int = 3) -> np.ndarray:
    """Non-uniform test image (passes the frame gate)."""
    rng = np.random.default_rng(1234)
    shape = (height, width, channels) if channels else (height, width)
    return rng.integers(16, 240, size=shape, dtype=np.uint8)


def drain(connection) -> List[Dict[str, Any]]:
    """Pop every queued outbound envelope from a broker Connection."""
    messages = []
    while not connection._queue.empty():
        item = connection._queue.get_nowait()
        if item is not None:
            messages.append(json.loads(item))
    return messages


class FakeSource:
    """Frame source returning scripted reads, then a default."""

    def __init__(self, reads=None, default=None):
        self.reads = list(reads or [])
        self.default = default if default is not None else (True, make_frame())
        self.calls = 0

    def read(self):
        self.calls += 1
        if self.reads:
            return self.reads.pop(0)
        return self.default


class FakeClient:
    """Stand-in for BrokerClient recording everything sent."""

    def __init__(self, sid: Optional[str] = "sid-1"):
        self.sid = sid
        self.connected = False
        self.started = False
        self.stopped = False
        self.log: List[Any] = []
        self.reconnect_now_calls = 0
        self.on_connecting = None
        self.on_connected = None
        self.on_disconnected = None
        self._handlers: Dict[str, list] = {}

    @property
    def emitted(self):
        return [entry for entry in self.log if isinstance(entry, tuple)]

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True
        self.connected = False

    def emit(self, event, data=None):
        self.log.append((event, data))
        return True

    def reconnect_now(self):
        self.reconnect_now_calls += 1

    def request_reconnect(self):
        self.log.append("reconnect")
        return True

    def get_stats(self):
        return {"connected": self.connected}

    async def fire(self, event, data):
        for handler in self._handlers.get(event, []):
            result = handler(data)
            if asyncio.iscoroutine(result):
                await result

    def statuses(self):
        return [data for event, data in self.emitted if event == "deviceStatus"]


class FakeActions(DeviceActions):
    """In-memory DeviceActions."""

    def __init__(self, source: Optional[FakeSource] = None, languages=("en", "fil")):
        super().__init__()
        self.languages = languages
        self._language = languages[0]
        self._camera = False
        self.source = source or FakeSource()
        self.reloads = 0
        self.closed = False
        self.fail_capture = False

    @property
    def language(self):
        return self._language

    @property
    def camera_active(self):
        return self._camera

    @property
    def frame_source(self):
        return self.source

    def set_language(self, lang):
        if lang not in self.languages:
            raise ValueError(f"Unsupported language: {lang}")
        self._language = lang

    def start_camera(self):
        if not self._camera:
            self._camera = True
            self._notify_camera("started")

    def stop_camera(self):
        if self._camera:
            self._camera = False
            self._notify_camera("stopped")

    def capture_photo(self):
        if self.fail_capture or not self._camera:
            raise RuntimeError("Camera is not running")
        return {"path": "captures/photo.jpg", "width": 640, "height": 480}

    def reload(self):
        self.reloads += 1
        self.stop_camera()
        self._language = self.languages[0]
        self._notify_reload()

    def close(self):
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def fake_actions(fake_source):
    return FakeActions(source=fake_source)
