"""
Frame Streaming Pipeline.

While active, captures the latest frame at a fixed interval, downscales it
so its longest edge fits a limit, JPEG-encodes it and emits a FramePacket
with a per-session sequence number. Frames are never queued: a tick with
no usable frame is skipped.
"""

import asyncio
import base64
import logging
import time
from typing import Optional, Callable, Any, Tuple

import cv2
import numpy as np

from .frame_gate import FrameGate
from .message import FramePacket, PREVIEW_FRAME, now_ms

logger = logging.getLogger(__name__)


class FrameEncodeError(Exception):
    """Raised when a frame cannot be JPEG-encoded."""


def downscale(frame: np.ndarray, max_edge: int) -> np.ndarray:
    """
    Shrink a frame so its longest edge is at most `max_edge`.

    Frames already within the limit are returned unchanged; frames are
    never upscaled.
    """
    if max_edge < 1:
        raise ValueError("max_edge must be >= 1")

    h, w = frame.shape[:2]
    longest = max(h, w)
    if longest <= max_edge:
        return frame

    scale = max_edge / longest
    new_w = min(max_edge, max(1, int(round(w * scale))))
    new_h = min(max_edge, max(1, int(round(h * scale))))
    return cv2.resize(frame, (new_w, new_h), interpolation=cv2.INTER_AREA)


def encode_frame(frame: np.ndarray, max_edge: int = 640, quality: int = 60) -> str:
    """
    Downscale and JPEG-encode a frame.

    Args:
        frame: BGR, BGRA or grayscale image
        max_edge: Longest edge of the encoded image in pixels
        quality: JPEG quality, 1-100

    Returns:
        data:image/jpeg;base64 URL

    Raises:
        FrameEncodeError: If OpenCV fails to encode the image
    """
    if not 1 <= quality <= 100:
        raise ValueError("quality must be between 1 and 100")

    if frame.ndim == 3 and frame.shape[2] == 4:
        frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)

    small = downscale(frame, max_edge)
    ok, buf = cv2.imencode(".jpg", small, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise FrameEncodeError(f"cv2.imencode failed for frame of shape {small.shape}")

    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


class FramePipeline:
    """
    Cancellable periodic frame capture.

    start() and stop() are the only external controls and both are
    idempotent. stop() resets the sequence so the next session starts at 1.

    The source must provide read() -> (ok, frame) with the semantics of
    cv2.VideoCapture.read(): ok is False when no new frame is available.
    """

    def __init__(
        self,
        source: Any,
        emit: Callable[[FramePacket], Any],
        device_id: str,
        interval: float = 0.5,
        max_edge: int = 640,
        quality: int = 60,
        event: str = PREVIEW_FRAME,
        stall_timeout_ms: int = 2000,
    ):
        """
        Initialize the pipeline.

        Args:
            source: Frame source with read() -> (ok, frame)
            emit: Callback (sync or async) receiving each FramePacket
            device_id: Identity stamped on every packet
            interval: Seconds between captures
            max_edge: Longest edge of emitted frames in pixels
            quality: JPEG quality, 1-100
            event: previewFrame or videoFrame
            stall_timeout_ms: Invalid-frame streak that is logged as a stall
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if not 1 <= quality <= 100:
            raise ValueError("quality must be between 1 and 100")
        if max_edge < 1:
            raise ValueError("max_edge must be >= 1")

        self.source = source
        self.emit = emit
        self.device_id = device_id
        self.interval = interval
        self.max_edge = max_edge
        self.quality = quality
        self.event = event

        self._gate = FrameGate(stall_timeout_ms=stall_timeout_ms)
        self._task: Optional[asyncio.Task] = None
        self._sequence = 0

        # Statistics
        self.frames_emitted = 0
        self.frames_skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sequence(self) -> int:
        """Number of the last frame emitted in the current session."""
        return self._sequence

    def start(self) -> bool:
        """
        Start periodic capture. Must be called from the event loop.

        Returns:
            True if started, False if already running
        """
        if self.running:
            logger.debug("Frame streaming already running")
            return False

        self._sequence = 0
        self._gate.reset()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Frame streaming started ({self.event}, every {self.interval:.2f}s)")
        return True

    def stop(self) -> bool:
        """
        Stop periodic capture. Safe to call in any state.

        Returns:
            True if a running capture was stopped, False otherwise
        """
        task, self._task = self._task, None
        self._sequence = 0
        if task is None or task.done():
            return False

        task.cancel()
        logger.info(f"Frame streaming stopped ({self.frames_emitted} frames emitted)")
        return True

    async def _run(self) -> None:
        """Capture loop at a fixed wall-clock interval."""
        while True:
            tick_start = time.monotonic()

            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in frame capture: {e}")

            elapsed = time.monotonic() - tick_start
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    async def tick(self) -> Optional[FramePacket]:
        """
        Capture, encode and emit one frame.

        The blocking read and the OpenCV encode run in the default executor
        so a slow or stalled source never holds up the event loop.

        Returns:
            The emitted packet, or None if the tick was skipped
        """
        loop = asyncio.get_running_loop()

        ok, frame = await loop.run_in_executor(None, self._read)
        result = self._gate.validate(ok, frame)
        if not result.valid:
            self.frames_skipped += 1
            logger.debug(f"Skipping frame: {result.reason}")
            self._gate.should_report_stall()
            return None

        image = await loop.run_in_executor(None, encode_frame, result.frame, self.max_edge, self.quality)

        self._sequence += 1
        packet = FramePacket(
            device_id=self.device_id,
            image=image,
            frame_number=self._sequence,
            timestamp=now_ms(),
            event=self.event,
        )

        try:
            sent = self.emit(packet)
            if asyncio.iscoroutine(sent):
                await sent
        except Exception as e:
            logger.warning(f"Failed to emit frame {packet.frame_number}: {e}")

        self.frames_emitted += 1
        return packet

    def _read(self) -> Tuple[bool, Optional[np.ndarray]]:
        try:
            return self.source.read()
        except Exception as e:
            logger.warning(f"Frame source read failed: {e}")
            return False, None

    def get_stats(self) -> dict:
        """Get streaming statistics."""
        return {
            "running": self.running,
            "sequence": self._sequence,
            "frames_emitted": self.frames_emitted,
            "frames_skipped": self.frames_skipped,
            "gate": self._gate.get_stats(),
        }
