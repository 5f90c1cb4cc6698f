"""
Command Executor - Runs commands received from the gateway.

Each recognized command performs one side effect on the device and reports
one DeviceStatus describing the outcome. Unrecognized commands report
"unknown_command"; a failing side effect reports "error". Nothing raised by
a handler escapes execute().
"""

import logging
from typing import Any, Callable, Dict, Optional

from .message import Command, CommandType, DeviceStatus, MessageError

logger = logging.getLogger(__name__)

# Status actions
LANGUAGE_CHANGED = "language_changed"
CAMERA_STARTED = "camera_started"
CAMERA_STOPPED = "camera_stopped"
PHOTO_CAPTURED = "photo_captured"
PREVIEW_STARTED = "preview_started"
PREVIEW_STOPPED = "preview_stopped"
PONG = "pong"
STATUS = "status"
RELOADING = "reloading"
UNKNOWN_COMMAND = "unknown_command"
ERROR = "error"


class CommandExecutor:
    """
    Dispatch table from CommandType to handler.

    The context must provide `actions` (DeviceActions), `pipeline`
    (FramePipeline), `machine` (ConnectionStateMachine), `client`
    (BrokerClient) and `report(action, **fields) -> DeviceStatus`.
    """

    def __init__(self, context: Any):
        self.context = context
        self._handlers: Dict[CommandType, Callable[[Command], DeviceStatus]] = {
            CommandType.SET_LANGUAGE: self._set_language,
            CommandType.START_CAMERA: self._start_camera,
            CommandType.STOP_CAMERA: self._stop_camera,
            CommandType.CAPTURE_PHOTO: self._capture_photo,
            CommandType.START_PREVIEW: self._start_preview,
            CommandType.STOP_PREVIEW: self._stop_preview,
            CommandType.PING: self._ping,
            CommandType.GET_STATUS: self._get_status,
            CommandType.RELOAD: self._reload,
        }

        missing = [t.value for t in CommandType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for command types: {', '.join(missing)}")

        # Statistics
        self.commands_executed = 0
        self.commands_failed = 0
        self.commands_unknown = 0
        self.commands_ignored = 0

    def execute(self, raw: Any) -> Optional[DeviceStatus]:
        """
        Execute one received command record.

        Args:
            raw: The `command` event payload

        Returns:
            The reported status, or None if the record had no type
        """
        try:
            command = Command.from_dict(raw)
        except MessageError as e:
            self.commands_ignored += 1
            logger.warning(f"Ignoring command: {e}")
            return None

        kind = command.kind
        if kind is None:
            self.commands_unknown += 1
            logger.warning(f"Unknown command type: {command.type}")
            return self.context.report(UNKNOWN_COMMAND, commandType=command.type)

        logger.info(f"Executing {kind.value}")
        try:
            status = self._handlers[kind](command)
        except Exception as e:
            self.commands_failed += 1
            logger.error(f"Command {kind.value} failed: {e}")
            return self.context.report(ERROR, command=kind.value, message=str(e))

        self.commands_executed += 1
        return status

    def _set_language(self, command: Command) -> DeviceStatus:
        lang = command.payload.get("language", command.payload.get("lang"))
        if not isinstance(lang, str) or not lang:
            raise ValueError("payload.language is required")
        self.context.actions.set_language(lang)
        return self.context.report(LANGUAGE_CHANGED, language=self.context.actions.language)

    def _start_camera(self, command: Command) -> DeviceStatus:
        self.context.actions.start_camera()
        return self.context.report(CAMERA_STARTED)

    def _stop_camera(self, command: Command) -> DeviceStatus:
        self.context.actions.stop_camera()
        return self.context.report(CAMERA_STOPPED)

    def _capture_photo(self, command: Command) -> DeviceStatus:
        photo = self.context.actions.capture_photo()
        return self.context.report(PHOTO_CAPTURED, **photo)

    def _start_preview(self, command: Command) -> DeviceStatus:
        started = self.context.pipeline.start()
        return self.context.report(PREVIEW_STARTED, alreadyRunning=not started)

    def _stop_preview(self, command: Command) -> DeviceStatus:
        stopped = self.context.pipeline.stop()
        return self.context.report(PREVIEW_STOPPED, wasRunning=stopped)

    def _ping(self, command: Command) -> DeviceStatus:
        return self.context.report(PONG, commandTimestamp=command.timestamp)

    def _get_status(self, command: Command) -> DeviceStatus:
        ctx = self.context
        return ctx.report(
            STATUS,
            state=ctx.machine.state.value,
            streaming=ctx.pipeline.running,
            camera=ctx.actions.camera_active,
            language=ctx.actions.language,
            socketId=ctx.client.sid,
        )

    def _reload(self, command: Command) -> DeviceStatus:
        self.context.actions.reload()
        return self.context.report(RELOADING)

    def get_stats(self) -> dict:
        """Get execution statistics."""
        return {
            "executed": self.commands_executed,
            "failed": self.commands_failed,
            "unknown": self.commands_unknown,
            "ignored": self.commands_ignored,
        }
