"""Frame-paced capture loop feeding camera frames to the inference engine.

States: IDLE → REQUESTING → STREAMING → STOPPED.

Each tick offers the latest camera frame to the engine and waits for the
submission to finish before the next tick, so at most one frame is ever in
flight. Frames without decodable dimensions are skipped. After stop() no
further frames are submitted and late results are dropped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Callable, Optional

from gesture_scroll.camera import CameraConstraints, CameraDevice, CameraStream, has_decodable_dimensions
from gesture_scroll.engine import InferenceEngine, LandmarkSets, ResultCallback
from gesture_scroll.errors import DeviceAccessError, InferenceSubmissionError
from gesture_scroll.metrics import MetricsCollector

logger = logging.getLogger("gesture_scroll.capture")


class CaptureState(enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    STOPPED = "stopped"


class SessionReadiness(enum.Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    ACTIVE = "active"
    STOPPED = "stopped"


_READINESS_ORDER = [
    SessionReadiness.NOT_READY,
    SessionReadiness.READY,
    SessionReadiness.ACTIVE,
]


class CaptureSession:
    """A granted camera stream and its readiness.

    Forward transitions go one step at a time; STOPPED can be entered from
    any state.
    """

    def __init__(self, stream: CameraStream):
        self.stream = stream
        self.readiness = SessionReadiness.NOT_READY

    def advance(self, target: SessionReadiness):
        if self.readiness == target:
            return
        if target == SessionReadiness.STOPPED:
            self.readiness = target
            return
        if self.readiness == SessionReadiness.STOPPED:
            raise RuntimeError("Session is stopped")
        current = _READINESS_ORDER.index(self.readiness)
        if _READINESS_ORDER.index(target) != current + 1:
            raise RuntimeError(f"Invalid session transition {self.readiness.value} -> {target.value}")
        self.readiness = target

    def close(self):
        if self.readiness == SessionReadiness.STOPPED:
            return
        self.advance(SessionReadiness.STOPPED)
        self.stream.close()

    async def aclose(self):
        """close() with the stream released in a worker thread."""
        if self.readiness == SessionReadiness.STOPPED:
            return
        self.advance(SessionReadiness.STOPPED)
        await asyncio.to_thread(self.stream.close)


class CaptureLoop:
    """Drives frames from a camera stream into an inference engine.

    Args:
        device: Camera collaborator used to request the stream.
        engine: Inference collaborator; its result callback is registered here.
        constraints: Camera request settings.
        frame_interval: Seconds to yield between ticks (animation pacing).
        ready: Predicate deciding whether a frame can be submitted.
        metrics: Optional collector for submission statistics.
    """

    def __init__(
        self,
        device: CameraDevice,
        engine: InferenceEngine,
        constraints: Optional[CameraConstraints] = None,
        frame_interval: float = 1 / 60,
        ready: Callable[[object], bool] = has_decodable_dimensions,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._device = device
        self._engine = engine
        self.constraints = constraints or CameraConstraints()
        self._frame_interval = frame_interval
        self._ready = ready
        self._metrics = metrics

        self._state = CaptureState.IDLE
        self._stop_requested = False
        self._session: Optional[CaptureSession] = None
        self._task: Optional[asyncio.Task] = None
        self._in_flight = False

        self._result_callbacks: list[ResultCallback] = []
        self._state_callbacks: list[Callable[[CaptureState], None]] = []
        self._granted_callbacks: list[Callable[[], None]] = []
        self._fatal_callbacks: list[Callable[[DeviceAccessError], None]] = []

        self.frames_submitted = 0
        self.frames_skipped = 0
        self.submission_failures = 0
        self.results_received = 0
        self.results_discarded = 0

        self._engine.on_results(self._handle_results)

    # --- subscriptions ---

    def on_results(self, callback: ResultCallback):
        """Register a callback for landmark results while streaming."""
        self._result_callbacks.append(callback)

    def on_state_change(self, callback: Callable[[CaptureState], None]):
        self._state_callbacks.append(callback)

    def on_stream_granted(self, callback: Callable[[], None]):
        """Register a callback fired once the camera is granted, before its first frame."""
        self._granted_callbacks.append(callback)

    def on_fatal(self, callback: Callable[[DeviceAccessError], None]):
        """Register a callback for unrecoverable device errors."""
        self._fatal_callbacks.append(callback)

    # --- state ---

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _set_state(self, state: CaptureState):
        if state == self._state:
            return
        logger.debug("Capture state %s -> %s", self._state.value, state.value)
        self._state = state
        for cb in self._state_callbacks:
            cb(state)

    # --- lifecycle ---

    async def start(self) -> CaptureSession:
        """Acquire the camera and begin streaming.

        Raises:
            DeviceAccessError: the camera could not be acquired. Unexpected
                device failures are wrapped with reason UNAVAILABLE.
        """
        if self._state != CaptureState.IDLE:
            raise RuntimeError(f"Capture loop already started (state={self._state.value})")

        self._set_state(CaptureState.REQUESTING)
        logger.info("Requesting camera access...")
        try:
            stream = await self._device.request_stream(self.constraints)
        except DeviceAccessError:
            self._set_state(CaptureState.STOPPED)
            raise
        except Exception as e:
            self._set_state(CaptureState.STOPPED)
            raise DeviceAccessError(DeviceAccessError.UNAVAILABLE, f"Camera request failed: {e}") from e

        self._session = CaptureSession(stream)
        for cb in self._granted_callbacks:
            cb()
        try:
            await stream.wait_metadata()
        except DeviceAccessError:
            await self._session.aclose()
            self._set_state(CaptureState.STOPPED)
            raise
        except Exception as e:
            await self._session.aclose()
            self._set_state(CaptureState.STOPPED)
            raise DeviceAccessError(DeviceAccessError.UNAVAILABLE, f"Camera stream failed: {e}") from e

        if self._stop_requested:
            await self._session.aclose()
            self._set_state(CaptureState.STOPPED)
            return self._session

        self._session.advance(SessionReadiness.READY)
        self._set_state(CaptureState.STREAMING)
        self._task = asyncio.create_task(self._run())
        logger.info("Camera active, starting processing")
        return self._session

    async def stop(self):
        """Stop submitting frames and release the camera. Safe to call twice."""
        self._stop_requested = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._teardown()

    async def wait(self):
        """Wait until the loop ends (stop() or a fatal device error)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _teardown(self):
        self._in_flight = False
        if self._session is not None:
            await self._session.aclose()
        self._set_state(CaptureState.STOPPED)

    # --- loop ---

    async def _run(self):
        try:
            while not self._stop_requested:
                await self.tick()
                await asyncio.sleep(self._frame_interval)
        except DeviceAccessError as e:
            logger.error("Camera error, stopping capture: %s", e)
            self._stop_requested = True
            await self._teardown()
            for cb in self._fatal_callbacks:
                cb(e)

    async def tick(self) -> bool:
        """Run one tick. Returns True when a frame was handed to the engine.

        `frames_submitted` only counts submissions that completed; failed
        ones are counted in `submission_failures`.
        """
        if self._stop_requested or self._in_flight:
            return False

        frame = self._session.stream.current_frame()
        if not self._ready(frame):
            self.frames_skipped += 1
            if self._metrics:
                self._metrics.record_skip()
            return False

        if self._session.readiness == SessionReadiness.READY:
            self._session.advance(SessionReadiness.ACTIVE)

        self._in_flight = True
        t0 = time.monotonic()
        try:
            await self._engine.send(frame)
        except Exception as e:
            error = InferenceSubmissionError(str(e) or type(e).__name__)
            self.submission_failures += 1
            if self._metrics:
                self._metrics.record_failure()
            logger.error("Processing error: %s", error)
        else:
            self.frames_submitted += 1
            if self._metrics:
                self._metrics.record_submission(time.monotonic() - t0)
        finally:
            self._in_flight = False
        return True

    def _handle_results(self, hands: LandmarkSets):
        if self._stop_requested:
            self.results_discarded += 1
            return
        self.results_received += 1
        if self._metrics:
            self._metrics.record_results(len(hands))
        for cb in self._result_callbacks:
            cb(hands)

