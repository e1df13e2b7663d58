"""Camera device access with threaded latest-frame buffering.

OpenCVCameraDevice implements the device collaborator the capture loop needs:
`request_stream(constraints)` opens the camera and returns a stream whose
background thread always holds the most recent frame.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import numpy as np

try:
    import cv2
except ImportError:
    cv2 = None

from gesture_scroll.errors import DeviceAccessError

logger = logging.getLogger("gesture_scroll.camera")


@dataclass(frozen=True)
class CameraConstraints:
    """Requested camera settings. Width/height/fps are hints, not guarantees."""
    facing_mode: str = "user"
    width: int = 640
    height: int = 480
    fps: int = 30
    device_index: int = 0
    mirror: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


class CameraStream(Protocol):
    async def wait_metadata(self) -> None: ...

    def current_frame(self) -> Optional[np.ndarray]: ...

    def close(self) -> None: ...


class CameraDevice(Protocol):
    async def request_stream(self, constraints: CameraConstraints) -> CameraStream: ...


def has_decodable_dimensions(frame) -> bool:
    """True when `frame` is an image with non-zero height and width."""
    shape = getattr(frame, "shape", None)
    if shape is None or len(shape) < 2:
        return False
    return shape[0] > 0 and shape[1] > 0


class OpenCVCameraStream:
    """A background reader over an opened cv2.VideoCapture."""

    def __init__(self, capture, mirror: bool = True, poll_interval: float = 0.01):
        self._cap = capture
        self._mirror = mirror
        self._poll_interval = poll_interval
        self._frame: Optional[np.ndarray] = None
        self._frame_id = 0
        self._error: Optional[DeviceAccessError] = None
        self._lock = threading.Lock()
        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()

    def _capture_loop(self):
        """Background capture thread - always holds the latest frame."""
        failures = 0
        while self._running:
            ret, frame = self._cap.read()
            if ret and frame is not None:
                failures = 0
                if self._mirror:
                    frame = cv2.flip(frame, 1)
                with self._lock:
                    self._frame = frame
                    self._frame_id += 1
            else:
                failures += 1
                if not self._cap.isOpened():
                    with self._lock:
                        self._error = DeviceAccessError(
                            DeviceAccessError.DEVICE_LOST, "Camera closed unexpectedly"
                        )
                    logger.error("Camera stream lost after %d failed reads", failures)
                    return
                time.sleep(0.001)

    async def wait_metadata(self):
        """Wait until the first frame with usable dimensions has arrived."""
        while True:
            with self._lock:
                if self._error is not None:
                    raise self._error
                if has_decodable_dimensions(self._frame):
                    h, w = self._frame.shape[:2]
                    logger.info("Camera stream ready: %dx%d", w, h)
                    return
            await asyncio.sleep(self._poll_interval)

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._error is not None:
                raise self._error
            return self._frame

    @property
    def frame_id(self) -> int:
        with self._lock:
            return self._frame_id

    def close(self):
        self._running = False
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._cap.release()


class OpenCVCameraDevice:
    """Opens cameras through OpenCV.

    `facing_mode` has no meaning for OpenCV device indices; it is logged only.
    """

    async def request_stream(self, constraints: CameraConstraints) -> OpenCVCameraStream:
        if cv2 is None:
            raise DeviceAccessError(
                DeviceAccessError.NOT_FOUND,
                "opencv-python required for camera capture",
            )
        return await asyncio.to_thread(self._open, constraints)

    def _open(self, constraints: CameraConstraints) -> OpenCVCameraStream:
        try:
            cap = cv2.VideoCapture(constraints.device_index)
        except (cv2.error, OSError) as e:
            raise DeviceAccessError(
                DeviceAccessError.UNAVAILABLE,
                f"Could not open camera {constraints.device_index}: {e}",
            ) from e
        if not cap.isOpened():
            cap.release()
            raise DeviceAccessError(
                DeviceAccessError.NOT_FOUND,
                f"Could not open camera {constraints.device_index}",
            )

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        cap.set(cv2.CAP_PROP_FPS, constraints.fps)

        actual_w = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_h = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(
            "Camera %d opened: %dx%d (requested %dx%d, facing=%s)",
            constraints.device_index, actual_w, actual_h,
            constraints.width, constraints.height, constraints.facing_mode,
        )
        return OpenCVCameraStream(cap, mirror=constraints.mirror)
