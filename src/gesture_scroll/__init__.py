"""gesture-scroll - Hand-gesture scroll control with a parallel model preloader."""

__version__ = "0.1.0"

from gesture_scroll.errors import (
    GestureScrollError,
    ConfigError,
    TransferError,
    PreloadError,
    DeviceAccessError,
    InferenceSubmissionError,
)
from gesture_scroll.transfer import ByteStreamTracker, ProgressAggregate, AssetProgress, TransferProgress
from gesture_scroll.preloader import AssetPreloader, AssetRequest, AssetLocator, ResourceHandle
from gesture_scroll.scroll_signal import (
    DeadzoneMapper,
    LandmarkToSignal,
    RawLandmark,
    ScrollSignal,
    SignalSmoother,
)
from gesture_scroll.camera import CameraConstraints, OpenCVCameraDevice
from gesture_scroll.engine import EngineOptions, MediaPipeHandsEngine
from gesture_scroll.capture import CaptureLoop, CaptureSession, CaptureState, SessionReadiness
from gesture_scroll.controller import GestureController, RenderLoop, StatusUpdate
from gesture_scroll.config import AppConfig, load_config
from gesture_scroll.metrics import MetricsCollector
