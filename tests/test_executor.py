"""Tests for the command executor."""

import json

import pytest

from client_remote.agent import AgentContext, AgentState
from client_remote.executor import CommandExecutor
from client_remote.frame_stream import FramePipeline
from client_remote.message import CommandType


@pytest.fixture
def context(fake_client, fake_actions):
    pipeline = FramePipeline(fake_actions.frame_source, lambda p: None, "cane-01", interval=10.0)
    return AgentContext(device_id="cane-01", client=fake_client, actions=fake_actions, pipeline=pipeline)


@pytest.fixture
def executor(context):
    return CommandExecutor(context)


def _only_status(client):
    statuses = client.statuses()
    assert len(statuses) == 1
    return statuses[0]


class TestDispatchTable:
    def test_every_command_type_has_a_handler(self, executor):
        assert set(executor._handlers) == set(CommandType)


class TestCommands:
    def test_set_language(self, executor, fake_client, fake_actions):
        status = executor.execute({"type": "SET_LANGUAGE", "payload": {"language": "fil"}})

        assert fake_actions.language == "fil"
        assert status.action == "language_changed"
        record = _only_status(fake_client)
        assert record["deviceId"] == "cane-01"
        assert record["action"] == "language_changed"
        assert record["language"] == "fil"
        assert isinstance(record["timestamp"], int)

    def test_set_language_accepts_lang_key(self, executor, fake_actions):
        executor.execute({"type": "SET_LANGUAGE", "payload": {"lang": "fil"}})
        assert fake_actions.language == "fil"

    def test_start_and_stop_camera(self, executor, fake_client, fake_actions):
        fake_actions.add_camera_listener(lambda event: None)
        executor.execute({"type": "START_CAMERA"})
        assert fake_actions.camera_active
        executor.execute({"type": "STOP_CAMERA"})
        assert not fake_actions.camera_active

        assert [s["action"] for s in fake_client.statuses()] == ["camera_started", "camera_stopped"]

    def test_capture_photo(self, executor, fake_client, fake_actions):
        fake_actions.start_camera()
        executor.execute({"type": "CAPTURE_PHOTO"})

        record = _only_status(fake_client)
        assert record["action"] == "photo_captured"
        assert (record["width"], record["height"]) == (640, 480)
        assert record["path"].endswith(".jpg")

    @pytest.mark.asyncio
    async def test_preview_start_stop(self, executor, fake_client, context):
        executor.execute({"type": "START_PREVIEW"})
        executor.execute({"type": "START_PREVIEW"})
        assert context.pipeline.running
        executor.execute({"type": "STOP_PREVIEW"})
        executor.execute({"type": "STOP_PREVIEW"})
        assert not context.pipeline.running

        records = [(s["action"], s.get("alreadyRunning", s.get("wasRunning"))) for s in fake_client.statuses()]
        assert records == [
            ("preview_started", False),
            ("preview_started", True),
            ("preview_stopped", True),
            ("preview_stopped", False),
        ]

    def test_ping(self, executor, fake_client):
        executor.execute({"type": "PING", "timestamp": 1700000000000})
        record = _only_status(fake_client)
        assert record["action"] == "pong"
        assert record["commandTimestamp"] == 1700000000000

    @pytest.mark.parametrize("raw", ['{"type":"PING","timestamp":1e400}', '{"type":"PING","timestamp":NaN}'])
    def test_ping_with_non_finite_timestamp(self, executor, fake_client, raw):
        executor.execute(json.loads(raw))
        record = _only_status(fake_client)
        assert record["action"] == "pong"
        assert record["commandTimestamp"] is None

    def test_get_status(self, executor, fake_client, context):
        context.machine.transition(AgentState.CONNECTING)
        executor.execute({"type": "GET_STATUS"})

        record = _only_status(fake_client)
        assert record["action"] == "status"
        assert record["state"] == "connecting"
        assert record["streaming"] is False
        assert record["camera"] is False
        assert record["language"] == "en"
        assert record["socketId"] == "sid-1"

    def test_reload(self, executor, fake_client, fake_actions):
        fake_actions.set_language("fil")
        executor.execute({"type": "RELOAD"})

        assert fake_actions.reloads == 1
        assert fake_actions.language == "en"
        assert _only_status(fake_client)["action"] == "reloading"


class TestFailures:
    def test_unknown_command_reports_once(self, executor, fake_client):
        status = executor.execute({"type": "DANCE", "payload": {"style": "tango"}})

        assert status.action == "unknown_command"
        assert _only_status(fake_client)["commandType"] == "DANCE"
        assert executor.get_stats()["unknown"] == 1

    def test_handler_error_is_reported_not_raised(self, executor, fake_client):
        executor.execute({"type": "SET_LANGUAGE", "payload": {"language": "klingon"}})

        record = _only_status(fake_client)
        assert record["action"] == "error"
        assert record["command"] == "SET_LANGUAGE"
        assert "klingon" in record["message"]

    def test_missing_payload_is_an_error(self, executor, fake_client):
        executor.execute({"type": "SET_LANGUAGE"})
        assert _only_status(fake_client)["action"] == "error"

    def test_capture_without_camera_is_an_error(self, executor, fake_client):
        executor.execute({"type": "CAPTURE_PHOTO"})
        record = _only_status(fake_client)
        assert record["action"] == "error"
        assert record["command"] == "CAPTURE_PHOTO"

    def test_processing_continues_after_error(self, executor, fake_client):
        executor.execute({"type": "SET_LANGUAGE", "payload": {"language": "klingon"}})
        executor.execute({"type": "PING"})

        assert [s["action"] for s in fake_client.statuses()] == ["error", "pong"]
        stats = executor.get_stats()
        assert (stats["failed"], stats["executed"]) == (1, 1)

    @pytest.mark.parametrize("raw", [None, "PING", {}, {"payload": {}}])
    def test_command_without_type_is_ignored(self, executor, fake_client, raw):
        assert executor.execute(raw) is None
        assert fake_client.emitted == []
