"""
Device side effects: camera capture and local UI state.

DeviceActions is the boundary the command executor drives. The local
implementation opens a camera or RTSP stream with OpenCV, keeps the
selected language, and saves captured photos to disk.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Callable, List, Dict, Any, Tuple, Sequence

import cv2
import numpy as np

from .frame_gate import FrameGate

logger = logging.getLogger(__name__)

CAMERA_STARTED = "started"
CAMERA_STOPPED = "stopped"

CameraListener = Callable[[str], None]
ReloadListener = Callable[[], None]


class CameraSource:
    """
    OpenCV capture wrapper.

    read() mirrors cv2.VideoCapture.read() and returns (False, None) while
    the camera is closed, so a streaming pipeline skips instead of failing.
    """

    def __init__(self, camera_index: int = 0, rtsp_url: Optional[str] = None):
        """
        Initialize camera source.

        Args:
            camera_index: Camera device index (used if rtsp_url is None)
            rtsp_url: RTSP stream URL (overrides camera_index if set)
        """
        self.camera_index = camera_index
        self.rtsp_url = rtsp_url
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def open(self) -> bool:
        """Open the capture device. Returns True if it is open afterwards."""
        with self._lock:
            if self._cap is not None and self._cap.isOpened():
                return True

            if self.rtsp_url:
                logger.info(f"Opening RTSP stream: {self.rtsp_url}")
                # Prefer TCP transport for reliability
                url = self.rtsp_url
                if '?' not in url:
                    url += '?rtsp_transport=tcp'
                elif 'rtsp_transport' not in url:
                    url += '&rtsp_transport=tcp'
                cap = cv2.VideoCapture(url)
            else:
                logger.info(f"Opening camera index: {self.camera_index}")
                cap = cv2.VideoCapture(self.camera_index)

            if not cap.isOpened():
                cap.release()
                logger.error("Failed to open camera source")
                return False

            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            fps = cap.get(cv2.CAP_PROP_FPS)
            logger.info(f"Camera opened: {width}x{height} @ {fps:.1f} fps")

            self._cap = cap
            return True

    def close(self) -> None:
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
                logger.info("Camera released")

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        with self._lock:
            if self._cap is None:
                return False, None
            return self._cap.read()


class DeviceActions:
    """
    Side effects a device can perform on command.

    Subclasses implement the actual effects; listener bookkeeping lives
    here. Camera listeners receive CAMERA_STARTED / CAMERA_STOPPED.
    """

    def __init__(self):
        self._camera_listeners: List[CameraListener] = []
        self._reload_listeners: List[ReloadListener] = []

    def add_camera_listener(self, listener: CameraListener) -> None:
        self._camera_listeners.append(listener)

    def add_reload_listener(self, listener: ReloadListener) -> None:
        self._reload_listeners.append(listener)

    def _notify_camera(self, event: str) -> None:
        for listener in list(self._camera_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in camera listener: {e}")

    def _notify_reload(self) -> None:
        for listener in list(self._reload_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Error in reload listener: {e}")

    @property
    def language(self) -> str:
        raise NotImplementedError

    @property
    def camera_active(self) -> bool:
        raise NotImplementedError

    @property
    def frame_source(self) -> Any:
        """Object with read() -> (ok, frame) used by the frame pipeline."""
        raise NotImplementedError

    def set_language(self, lang: str) -> None:
        raise NotImplementedError

    def start_camera(self) -> None:
        raise NotImplementedError

    def stop_camera(self) -> None:
        raise NotImplementedError

    def capture_photo(self) -> Dict[str, Any]:
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release held resources."""


class LocalDeviceActions(DeviceActions):
    """DeviceActions backed by a local OpenCV camera."""

    def __init__(
        self,
        camera: Optional[CameraSource] = None,
        languages: Sequence[str] = ("en", "fil"),
        default_language: Optional[str] = None,
        captures_dir: str = "captures",
        jpeg_quality: int = 90,
    ):
        """
        Initialize local device actions.

        Args:
            camera: Camera source (index 0 if omitted)
            languages: Supported UI languages
            default_language: Language after start and reload (first supported if omitted)
            captures_dir: Directory for captured photos
            jpeg_quality: JPEG quality of captured photos
        """
        super().__init__()
        if not languages:
            raise ValueError("at least one language is required")

        self.camera = camera or CameraSource()
        self.languages = tuple(languages)
        self.default_language = default_language or self.languages[0]
        if self.default_language not in self.languages:
            raise ValueError(f"default language {self.default_language!r} is not supported")
        self.captures_dir = Path(captures_dir)
        self.jpeg_quality = jpeg_quality

        self._language = self.default_language
        self._gate = FrameGate()

    @property
    def language(self) -> str:
        return self._language

    @property
    def camera_active(self) -> bool:
        return self.camera.is_open

    @property
    def frame_source(self) -> CameraSource:
        return self.camera

    def set_language(self, lang: str) -> None:
        if lang not in self.languages:
            raise ValueError(f"Unsupported language: {lang}")
        logger.info(f"Language changed to: {lang}")
        self._language = lang

    def start_camera(self) -> None:
        if self.camera.is_open:
            logger.debug("Camera already running")
            return
        if not self.camera.open():
            raise RuntimeError("Failed to open camera source")
        self._notify_camera(CAMERA_STARTED)

    def stop_camera(self) -> None:
        if not self.camera.is_open:
            logger.debug("Camera already stopped")
            return
        self.camera.close()
        self._notify_camera(CAMERA_STOPPED)

    def capture_photo(self) -> Dict[str, Any]:
        if not self.camera.is_open:
            raise RuntimeError("Camera is not running")

        ok, frame = self.camera.read()
        result = self._gate.validate(ok, frame)
        if not result.valid:
            raise RuntimeError(f"No usable frame ({result.reason})")

        self.captures_dir.mkdir(parents=True, exist_ok=True)
        path = self.captures_dir / f"photo_{time.strftime('%Y%m%d_%H%M%S')}_{int(time.time() * 1000) % 1000:03d}.jpg"
        if not cv2.imwrite(str(path), result.frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]):
            raise RuntimeError(f"Failed to write {path}")

        h, w = result.frame.shape[:2]
        logger.info(f"Photo captured: {path} ({w}x{h})")
        return {"path": os.fspath(path), "width": w, "height": h}

    def reload(self) -> None:
        logger.info("Reloading device state")
        self.stop_camera()
        self._language = self.default_language
        self._notify_reload()

    def close(self) -> None:
        self.camera.close()
