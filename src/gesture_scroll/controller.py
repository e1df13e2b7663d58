"""Gesture control session: preload → engine → camera → scroll signal.

GestureController walks the boot sequence and reports progress on a status
channel; RenderLoop advances the smoother once per tick and hands the
smoothed value to a renderer.

Usage:
    controller = GestureController(load_config())
    controller.on_status(lambda s: print(s.percent, s.message))
    if await controller.start():
        render = RenderLoop(controller.signal, controller.smoother, renderer)
        await render.run()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from gesture_scroll.camera import CameraDevice, OpenCVCameraDevice
from gesture_scroll.capture import CaptureLoop, CaptureState
from gesture_scroll.config import AppConfig
from gesture_scroll.engine import EngineOptions, InferenceEngine, LandmarkSets, MediaPipeHandsEngine
from gesture_scroll.errors import DeviceAccessError, TransferError
from gesture_scroll.metrics import MetricsCollector
from gesture_scroll.preloader import AssetLocator, AssetPreloader, preload_with_fallback, requests_for
from gesture_scroll.scroll_signal import DeadzoneMapper, LandmarkToSignal, ScrollSignal, SignalSmoother

logger = logging.getLogger("gesture_scroll.controller")

# Download progress occupies this slice of the overall boot progress bar
DOWNLOAD_PROGRESS_START = 20.0
DOWNLOAD_PROGRESS_SPAN = 50.0

EngineFactory = Callable[[AssetLocator, EngineOptions], Awaitable[InferenceEngine]]
Renderer = Callable[[float, float], Optional[Awaitable[None]]]


@dataclass
class StatusUpdate:
    """A progress/status report for the presentation layer."""
    percent: float
    message: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"percent": round(self.percent, 2), "message": self.message, "timestamp": self.timestamp}


def download_message(percent: float, speed_mbps: float, loaded_mb: float, total_mb: float) -> str:
    return (
        f"Downloading AI Model: {math.floor(percent)}%\n"
        f"{loaded_mb:.2f}MB / {total_mb:.2f}MB\n"
        f"Speed: {speed_mbps:.2f} MB/s"
    )


class GestureController:
    """Owns one gesture control session and its ScrollSignal."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        preloader: Optional[AssetPreloader] = None,
        engine_factory: Optional[EngineFactory] = None,
        device: Optional[CameraDevice] = None,
        signal: Optional[ScrollSignal] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or AppConfig()
        self.metrics = metrics or MetricsCollector()
        self.signal = signal or ScrollSignal()
        self.smoother = SignalSmoother(self.config.signal.damping)
        self.mapper = LandmarkToSignal(
            DeadzoneMapper(self.config.signal.deadzone_low, self.config.signal.deadzone_high),
            tracked_landmark=self.config.signal.tracked_landmark,
        )

        self._preloader = preloader or AssetPreloader(
            progress_interval=self.config.assets.progress_interval,
            metrics=self.metrics,
        )
        self._engine_factory = engine_factory or MediaPipeHandsEngine.create
        self._device = device or OpenCVCameraDevice()

        self.engine: Optional[InferenceEngine] = None
        self.capture: Optional[CaptureLoop] = None
        self.locator: Optional[AssetLocator] = None
        self.last_status: Optional[StatusUpdate] = None
        self.last_error: Optional[Exception] = None
        self._status_callbacks: list[Callable[[StatusUpdate], None]] = []

    def on_status(self, callback: Callable[[StatusUpdate], None]):
        """Register a callback for status updates."""
        self._status_callbacks.append(callback)

    def report(self, percent: float, message: str):
        status = StatusUpdate(percent, message)
        self.last_status = status
        logger.info("[%3.0f%%] %s", percent, message.replace("\n", " | "))
        for cb in self._status_callbacks:
            cb(status)

    @property
    def active(self) -> bool:
        return self.capture is not None and self.capture.state == CaptureState.STREAMING

    async def start(self) -> bool:
        """Boot the gesture path. Returns False if it could not be started.

        Model and camera failures are reported on the status channel, not raised.
        """
        self.report(10, "Initializing Video...")
        self.report(DOWNLOAD_PROGRESS_START, "Connecting to Model Server...")

        assets = self.config.assets
        self.locator = await preload_with_fallback(
            self._preloader,
            requests_for(assets.base_url, assets.files),
            assets.base_url,
            on_progress=self._on_download_progress,
            on_fallback=lambda e: self.report(DOWNLOAD_PROGRESS_START, "Download info unavailable, loading..."),
            metrics=self.metrics,
        )

        try:
            self.engine = await self._engine_factory(self.locator, self.config.engine)
        except (TransferError, ImportError, RuntimeError) as e:
            self.last_error = e
            logger.error("Model load failed: %s", e)
            self.report(0, f"Model Error: {e}")
            return False

        self.capture = CaptureLoop(
            self._device,
            self.engine,
            constraints=self.config.camera,
            frame_interval=1.0 / self.config.signal.fps,
            metrics=self.metrics,
        )
        self.capture.on_results(self._on_results)
        self.capture.on_stream_granted(lambda: self.report(85, "Starting Camera Stream..."))
        self.capture.on_fatal(self._on_device_lost)

        self.report(75, "Requesting Camera Access...")
        try:
            await self.capture.start()
        except DeviceAccessError as e:
            self.last_error = e
            logger.error("Error starting camera: %s", e)
            self.report(0, f"Camera Error: {e}")
            await self._release_engine()
            return False

        if not self.active:
            await self._release_engine()
            return False

        self.report(100, "Ready!")
        return True

    async def stop(self):
        if self.capture is not None:
            await self.capture.stop()
        await self._release_engine()

    async def _release_engine(self):
        # Waits for a detection still running after the capture task was cancelled
        engine, self.engine = self.engine, None
        if engine is not None:
            await engine.aclose()

    def _close_engine(self):
        engine, self.engine = self.engine, None
        if engine is not None:
            engine.close()

    def _on_download_progress(self, percent: float, speed: float, loaded_mb: float, total_mb: float):
        self.report(
            DOWNLOAD_PROGRESS_START + percent * DOWNLOAD_PROGRESS_SPAN / 100.0,
            download_message(percent, speed, loaded_mb, total_mb),
        )

    def _on_device_lost(self, error: DeviceAccessError):
        self.last_error = error
        self.report(0, f"Camera Error: {error}")
        # The frame source failed before submission, so no detection is in flight
        self._close_engine()

    def _on_results(self, hands: LandmarkSets):
        self.mapper.apply(hands, self.signal)


class RenderLoop:
    """Advances the smoother once per tick and feeds the renderer.

    Under run() the renderer may be a coroutine function; it is awaited
    before the next tick.
    """

    def __init__(
        self,
        signal: ScrollSignal,
        smoother: SignalSmoother,
        renderer: Renderer,
        fps: int = 60,
    ):
        self.signal = signal
        self.smoother = smoother
        self.renderer = renderer
        self._interval = 1.0 / fps
        self._running = False
        self._start: Optional[float] = None

    def tick(self) -> float:
        current, _ = self._render()
        return current

    def _render(self):
        if self._start is None:
            self._start = time.monotonic()
        current = self.smoother.step(self.signal)
        return current, self.renderer(current, time.monotonic() - self._start)

    async def run(self, max_ticks: Optional[int] = None):
        self._running = True
        ticks = 0
        while self._running and (max_ticks is None or ticks < max_ticks):
            _, pending = self._render()
            if inspect.isawaitable(pending):
                await pending
            ticks += 1
            await asyncio.sleep(self._interval)
        self._running = False

    def stop(self):
        self._running = False

    @property
    def running(self) -> bool:
        return self._running
