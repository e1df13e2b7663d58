"""Hand landmark inference engine using MediaPipe Tasks.

The capture loop only depends on the InferenceEngine interface: an options
call, a result-callback registration and an async `send(frame)`. The default
implementation wraps MediaPipe's HandLandmarker and loads its model through an
AssetLocator, so a preloaded in-memory buffer is used when available and the
remote URL otherwise.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Protocol

import aiohttp
import numpy as np

try:
    import mediapipe as mp
except ImportError:
    mp = None

from gesture_scroll.errors import TransferError
from gesture_scroll.preloader import AssetLocator, ResourceHandle
from gesture_scroll.scroll_signal import RawLandmark
from gesture_scroll.transfer import is_success

logger = logging.getLogger("gesture_scroll.engine")

MODEL_BASE_URL = "https://storage.googleapis.com/mediapipe-models/hand_landmarker/hand_landmarker/float16/1/"
MODEL_FILE = "hand_landmarker.task"

LandmarkSets = list[list[RawLandmark]]
ResultCallback = Callable[[LandmarkSets], None]


@dataclass(frozen=True)
class EngineOptions:
    """Options understood by the hand landmark engine."""
    max_num_hands: int = 1
    model_complexity: int = 1  # 0 = lite, 1 = full
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5

    def __post_init__(self):
        if self.max_num_hands < 1:
            raise ValueError(f"max_num_hands must be >= 1, got {self.max_num_hands}")
        if self.model_complexity not in (0, 1):
            raise ValueError(f"model_complexity must be 0 or 1, got {self.model_complexity}")
        for name in ("min_detection_confidence", "min_tracking_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")

    def to_dict(self) -> dict:
        return asdict(self)


class InferenceEngine(Protocol):
    def set_options(self, options: EngineOptions) -> None: ...

    def on_results(self, callback: ResultCallback) -> None: ...

    async def send(self, frame) -> None: ...

    def close(self) -> None: ...

    async def aclose(self) -> None: ...


async def download_asset(url: str, session: Optional[aiohttp.ClientSession] = None) -> bytes:
    """Plain GET of a single asset, no progress tracking."""
    identifier = url.rsplit("/", 1)[-1]
    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()
    try:
        resp = await session.get(url)
        try:
            if not is_success(resp.status):
                raise TransferError(identifier, status=resp.status)
            return await resp.read()
        finally:
            resp.release()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise TransferError(identifier, str(e) or type(e).__name__) from e
    finally:
        if own_session:
            await session.close()


class MediaPipeHandsEngine:
    """MediaPipe HandLandmarker in VIDEO mode.

    Frames are BGR numpy arrays (OpenCV order). Detection runs in a worker
    thread; results are delivered to every registered callback as a list of
    21-point landmark sets, one per detected hand (empty when none).

    A detection keeps running in its worker thread even when the awaiting
    task is cancelled, so the landmarker is only replaced or released while
    holding `_landmarker_lock`.
    """

    def __init__(self, model: bytes, options: Optional[EngineOptions] = None):
        if mp is None:
            raise ImportError(
                "mediapipe is required. Install with: pip install mediapipe"
            )

        self._model = model
        self._callbacks: list[ResultCallback] = []
        self._landmarker = None
        self._landmarker_lock = threading.Lock()
        self._start = time.perf_counter()
        self._last_timestamp_ms = -1
        self.options = options or EngineOptions()
        self.set_options(self.options)

    @classmethod
    async def create(
        cls,
        locator: AssetLocator,
        options: Optional[EngineOptions] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> MediaPipeHandsEngine:
        """Build an engine from a preloaded handle or, failing that, the remote URL."""
        location = locator.locate(MODEL_FILE)
        if isinstance(location, ResourceHandle):
            logger.info("Using preloaded model %s (%d bytes)", MODEL_FILE, location.size)
            model = location.data
        else:
            logger.info("Fetching model from %s", location)
            model = await download_asset(location, session)
        return cls(model, options)

    def set_options(self, options: EngineOptions):
        """(Re)create the landmarker with new options.

        Blocks until an in-flight detection has finished.
        """
        BaseOptions = mp.tasks.BaseOptions
        vision = mp.tasks.vision

        # The task bundle ships a single landmark model; model_complexity
        # does not select a different one.
        landmarker = vision.HandLandmarker.create_from_options(
            vision.HandLandmarkerOptions(
                base_options=BaseOptions(model_asset_buffer=self._model),
                running_mode=vision.RunningMode.VIDEO,
                num_hands=options.max_num_hands,
                min_hand_detection_confidence=options.min_detection_confidence,
                min_tracking_confidence=options.min_tracking_confidence,
            )
        )
        with self._landmarker_lock:
            previous, self._landmarker = self._landmarker, landmarker
            self.options = options
            self._last_timestamp_ms = -1
        if previous is not None:
            previous.close()
        logger.debug("Landmarker configured: %s", options)

    def on_results(self, callback: ResultCallback):
        self._callbacks.append(callback)

    async def send(self, frame):
        hands = await asyncio.to_thread(self._detect, frame)
        for cb in self._callbacks:
            cb(hands)

    def _detect(self, frame: np.ndarray) -> LandmarkSets:
        rgb = np.ascontiguousarray(frame[..., ::-1])
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        with self._landmarker_lock:
            if self._landmarker is None:
                raise RuntimeError("Engine is closed")

            # VIDEO mode needs strictly increasing timestamps
            timestamp_ms = int((time.perf_counter() - self._start) * 1000)
            if timestamp_ms <= self._last_timestamp_ms:
                timestamp_ms = self._last_timestamp_ms + 1
            self._last_timestamp_ms = timestamp_ms

            result = self._landmarker.detect_for_video(image, timestamp_ms)

        return [
            [RawLandmark(lm.x, lm.y, lm.z) for lm in hand]
            for hand in (result.hand_landmarks or [])
        ]

    def close(self):
        """Release MediaPipe resources, waiting for an in-flight detection."""
        with self._landmarker_lock:
            landmarker, self._landmarker = self._landmarker, None
        if landmarker is not None:
            landmarker.close()

    async def aclose(self):
        """close() without blocking the event loop."""
        await asyncio.to_thread(self.close)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
