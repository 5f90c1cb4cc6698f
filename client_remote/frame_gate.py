"""
Frame Quality Gate - Decides whether a captured frame may be streamed.

A rejected frame is skipped, never queued: the stream carries the most
recent decodable frame or nothing at all.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Pixels sampled by the decode-artifact heuristic, as (row, col) fractions
_SAMPLE_POINTS = ((0.25, 0.25), (0.25, 0.75), (0.5, 0.5), (0.75, 0.25), (0.75, 0.75))
_BLACK_LEVEL = 5


@dataclass
class FrameValidationResult:
    """Outcome of one validation."""
    valid: bool
    reason: str
    frame: Optional[np.ndarray] = None


def rejection_reason(ok: bool, frame: Optional[np.ndarray]) -> Optional[str]:
    """
    Check a read result with cv2.VideoCapture.read() semantics.

    Returns:
        None for a usable frame, otherwise a short reason tag
    """
    if not ok:
        return "read_failed"
    if frame is None:
        return "frame_none"
    if frame.size == 0:
        return "empty_frame"
    if frame.ndim not in (2, 3):
        return "invalid_dims"
    if frame.ndim == 3 and frame.shape[2] not in (3, 4):
        return "invalid_channels"
    if looks_like_decode_artifact(frame):
        return "likely_corrupted"
    return None


def looks_like_decode_artifact(frame: np.ndarray) -> bool:
    """
    True when every sampled pixel is identical and nearly black.

    Broken RTSP/H.264 decodes and cameras that have not warmed up yet
    produce such frames.
    """
    h, w = frame.shape[:2]
    if h < 2 or w < 2:
        return True

    samples = [frame[int(h * fy), int(w * fx)] for fy, fx in _SAMPLE_POINTS]
    first = samples[0]
    if any(not np.array_equal(s, first) for s in samples[1:]):
        return False
    return float(np.mean(first)) < _BLACK_LEVEL


class FrameGate:
    """
    Frame validation with stall tracking.

    A stall is a streak of rejected frames lasting at least
    `stall_timeout_ms`; should_report_stall() returns True once per stall.
    """

    def __init__(self, stall_timeout_ms: int = 2000):
        self.stall_timeout_ms = stall_timeout_ms

        self._streak_started: Optional[float] = None
        self._stall_reported = False
        self._last_shape: Optional[Tuple[int, ...]] = None
        self._accepted = 0
        self._rejected = 0

    def validate(self, ok: bool, frame: Optional[np.ndarray]) -> FrameValidationResult:
        reason = rejection_reason(ok, frame)
        if reason is not None:
            self._rejected += 1
            if self._streak_started is None:
                self._streak_started = time.monotonic()
                self._stall_reported = False
            return FrameValidationResult(False, reason)

        self._accepted += 1
        if self._stall_reported:
            logger.info("Frame source recovered")
        self._streak_started = None
        self._stall_reported = False
        self._last_shape = frame.shape
        return FrameValidationResult(True, "ok", frame)

    def streak_ms(self) -> float:
        """Duration of the current rejection streak in milliseconds."""
        if self._streak_started is None:
            return 0.0
        return (time.monotonic() - self._streak_started) * 1000

    def should_report_stall(self) -> bool:
        if self._streak_started is None or self._stall_reported:
            return False

        elapsed_ms = self.streak_ms()
        if elapsed_ms < self.stall_timeout_ms:
            return False

        self._stall_reported = True
        logger.warning(f"Frame source stalled: no usable frame for {elapsed_ms:.0f}ms")
        return True

    def reset(self) -> None:
        """Forget the current streak and last shape (counters are kept)."""
        self._streak_started = None
        self._stall_reported = False
        self._last_shape = None

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._accepted + self._rejected
        return {
            "total_frames": total,
            "valid_frames": self._accepted,
            "invalid_frames": self._rejected,
            "valid_rate": self._accepted / total if total else 0.0,
            "current_invalid_duration_ms": self.streak_ms(),
            "last_valid_shape": self._last_shape,
        }
