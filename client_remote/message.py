"""
Message Schema for the relay protocol.

Defines the JSON envelope exchanged with the gateway and the records
carried inside it: commands, device status (telemetry), frame packets and
dispatch acknowledgments.
"""

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, Optional, Dict, Any, Union

# Event names
OPEN = "open"
REGISTER_DEVICE = "registerDevice"
REGISTERED = "registered"
SEND_COMMAND = "sendCommand"
COMMAND = "command"
COMMAND_SENT = "commandSent"
DEVICE_STATUS = "deviceStatus"
PREVIEW_FRAME = "previewFrame"
VIDEO_FRAME = "videoFrame"

FRAME_EVENTS = (PREVIEW_FRAME, VIDEO_FRAME)


class MessageError(ValueError):
    """Raised when an inbound message cannot be decoded."""


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    """Integer value of a JSON number, or `default` for anything else (including inf and nan)."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return int(value)


def encode_event(event: str, data: Optional[Dict[str, Any]] = None) -> str:
    """Serialize an event envelope to JSON."""
    return json.dumps({"event": event, "data": data if data is not None else {}})


def decode_event(raw: Union[str, bytes, Dict[str, Any]]) -> Tuple[str, Any]:
    """
    Decode an event envelope.

    Args:
        raw: JSON text, or an envelope already decoded by the transport

    Returns:
        Tuple of (event, data)

    Raises:
        MessageError: If the envelope is malformed
    """
    try:
        envelope = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except json.JSONDecodeError as e:
        raise MessageError(f"invalid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise MessageError("envelope must be an object")
    event = envelope.get("event")
    if not isinstance(event, str) or not event:
        raise MessageError("envelope has no event name")
    return event, envelope.get("data")


class CommandType(str, Enum):
    """Closed set of commands a device understands."""
    SET_LANGUAGE = "SET_LANGUAGE"
    START_CAMERA = "START_CAMERA"
    STOP_CAMERA = "STOP_CAMERA"
    CAPTURE_PHOTO = "CAPTURE_PHOTO"
    START_PREVIEW = "START_PREVIEW"
    STOP_PREVIEW = "STOP_PREVIEW"
    PING = "PING"
    GET_STATUS = "GET_STATUS"
    RELOAD = "RELOAD"

    @classmethod
    def parse(cls, value: Any) -> Optional["CommandType"]:
        """Map a raw type tag to a CommandType, or None if unrecognized."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class Command:
    """
    Command addressed to a device.

    Attributes:
        type: Raw type tag (may be unrecognized by the device)
        payload: Opaque structured data
        timestamp: Issued-at time in milliseconds, if the sender set one
    """
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[int] = None

    @property
    def kind(self) -> Optional[CommandType]:
        return CommandType.parse(self.type)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type}
        if self.payload:
            d["payload"] = dict(self.payload)
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp
        return d

    @classmethod
    def from_dict(cls, d: Any) -> "Command":
        """
        Build a command from a received record.

        Raises:
            MessageError: If the record is not an object or has no type
        """
        if not isinstance(d, dict):
            raise MessageError("command must be an object")
        cmd_type = d.get("type")
        if not isinstance(cmd_type, str) or not cmd_type:
            raise MessageError("command has no type")

        payload = d.get("payload")
        timestamp = d.get("timestamp")
        return cls(
            type=cmd_type,
            payload=payload if isinstance(payload, dict) else {},
            timestamp=as_int(timestamp),
        )

    @classmethod
    def create(cls, command_type: Union[str, CommandType], payload: Optional[Dict[str, Any]] = None) -> "Command":
        """Create a command stamped with the current time."""
        if isinstance(command_type, CommandType):
            command_type = command_type.value
        return cls(type=command_type, payload=dict(payload or {}), timestamp=now_ms())


@dataclass(frozen=True)
class DeviceStatus:
    """
    Telemetry record emitted by a device.

    Attributes:
        device_id: Identity of the emitting device
        action: Outcome tag (e.g. "language_changed", "error")
        fields: Additional structured fields
        timestamp: Emission time in milliseconds
        socket_id: Session id of the sender, added by the gateway
    """
    device_id: str
    action: str
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    socket_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.fields)
        d.update({
            "deviceId": self.device_id,
            "action": self.action,
            "timestamp": self.timestamp,
        })
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DeviceStatus":
        """
        Parse a relayed status record.

        Raises:
            MessageError: If deviceId or action is missing
        """
        if not isinstance(d, dict):
            raise MessageError("status must be an object")
        rest = dict(d)
        device_id = rest.pop("deviceId", None)
        action = rest.pop("action", None)
        timestamp = rest.pop("timestamp", None)
        socket_id = rest.pop("socketId", None)
        if not isinstance(device_id, str) or not isinstance(action, str):
            raise MessageError("status needs deviceId and action")
        return cls(
            device_id=device_id,
            action=action,
            fields=rest,
            timestamp=as_int(timestamp, now_ms()),
            socket_id=socket_id,
        )


@dataclass(frozen=True)
class FramePacket:
    """
    One downsampled, compressed video frame.

    Attributes:
        device_id: Identity of the emitting device
        image: JPEG data URL
        frame_number: Sequence number within the streaming session (from 1)
        timestamp: Capture time in milliseconds
        event: previewFrame or videoFrame
    """
    device_id: str
    image: str
    frame_number: int
    timestamp: int = field(default_factory=now_ms)
    event: str = PREVIEW_FRAME

    def to_dict(self) -> Dict[str, Any]:
        image_key = "frame" if self.event == VIDEO_FRAME else "image"
        return {
            "deviceId": self.device_id,
            image_key: self.image,
            "frameNumber": self.frame_number,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any], event: str = PREVIEW_FRAME) -> "FramePacket":
        """
        Parse a relayed frame record.

        Raises:
            MessageError: If deviceId or the image payload is missing
        """
        if not isinstance(d, dict):
            raise MessageError("frame must be an object")
        image = d.get("image", d.get("frame"))
        device_id = d.get("deviceId")
        if not isinstance(device_id, str) or not isinstance(image, str):
            raise MessageError("frame needs deviceId and image")
        frame_number = d.get("frameNumber")
        timestamp = d.get("timestamp")
        return cls(
            device_id=device_id,
            image=image,
            frame_number=as_int(frame_number, 0),
            timestamp=as_int(timestamp, now_ms()),
            event=event,
        )


@dataclass(frozen=True)
class CommandAck:
    """Gateway acknowledgment of a dispatch attempt (not of delivery)."""
    device_id: str
    command: Dict[str, Any]
    timestamp: int

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CommandAck":
        if not isinstance(d, dict):
            raise MessageError("ack must be an object")
        device_id = d.get("deviceId")
        command = d.get("command")
        if not isinstance(device_id, str) or not isinstance(command, dict):
            raise MessageError("ack needs deviceId and command")
        timestamp = d.get("timestamp")
        return cls(
            device_id=device_id,
            command=command,
            timestamp=as_int(timestamp, now_ms()),
        )
