"""Landmark → scroll signal mapping and per-tick smoothing.

The tracked fingertip's vertical position is remapped through a deadzone
(the usable 0.2–0.8 band of the frame becomes the full 0–1 range) and written
to ScrollSignal.target. Every render tick SignalSmoother moves
ScrollSignal.current a fixed fraction of the way toward the target.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

# MediaPipe hand landmark indices
WRIST = 0
INDEX_FINGER_TIP = 8
NUM_LANDMARKS = 21

DEFAULT_DEADZONE_LOW = 0.2
DEFAULT_DEADZONE_HIGH = 0.8
DEFAULT_DAMPING = 0.05

WHEEL_SPEED = 0.001
TOUCH_SPEED = 0.002


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class RawLandmark:
    """One normalized landmark; x, y, z roughly in [0, 1] image space."""
    x: float
    y: float
    z: float = 0.0


@dataclass
class ScrollSignal:
    """Scroll state shared between input sources and the renderer.

    `target` may be written by any input source; `current` is only written by
    SignalSmoother. Both stay within [0, 1].
    """
    target: float = 0.0
    current: float = 0.0

    def __post_init__(self):
        self.target = clamp(self.target)
        self.current = clamp(self.current)

    def set_target(self, value: float):
        self.target = clamp(value)

    def nudge(self, delta: float):
        """Move the target by `delta`, as wheel and touch input do."""
        self.target = clamp(self.target + delta)

    def to_dict(self) -> dict:
        return {"target": self.target, "current": self.current}


class DeadzoneMapper:
    """Linear remap of [low, high] onto [0, 1], clamping outside the band."""

    def __init__(self, low: float = DEFAULT_DEADZONE_LOW, high: float = DEFAULT_DEADZONE_HIGH):
        if not low < high:
            raise ValueError(f"Deadzone low ({low}) must be below high ({high})")
        self.low = low
        self.high = high

    def map(self, raw_y: float) -> float:
        return clamp((raw_y - self.low) / (self.high - self.low))

    __call__ = map


class LandmarkToSignal:
    """Picks the tracked point from inference results and maps it to a signal.

    Only the first tracked hand is used. `tracked_landmark` selects which of
    its points drives the signal (index fingertip by default).
    """

    def __init__(
        self,
        mapper: Optional[DeadzoneMapper] = None,
        tracked_landmark: int = INDEX_FINGER_TIP,
    ):
        if not 0 <= tracked_landmark < NUM_LANDMARKS:
            raise ValueError(f"tracked_landmark must be in [0, {NUM_LANDMARKS}), got {tracked_landmark}")
        self.mapper = mapper or DeadzoneMapper()
        self.tracked_landmark = tracked_landmark

    def from_results(self, landmark_sets: Sequence[Sequence[RawLandmark]]) -> Optional[float]:
        """Return the mapped signal, or None when no hand was detected."""
        if not landmark_sets:
            return None
        point = landmark_sets[0][self.tracked_landmark]
        return self.mapper.map(point.y)

    def apply(self, landmark_sets: Sequence[Sequence[RawLandmark]], signal: ScrollSignal) -> bool:
        """Write the mapped value into `signal.target`. Returns False if nothing changed."""
        value = self.from_results(landmark_sets)
        if value is None:
            return False
        signal.set_target(value)
        return True


class SignalSmoother:
    """One-pole exponential filter, advanced once per render tick.

    current' = current + (target - current) * damping

    Frame-count based: the same damping gives a different wall-clock response
    at different frame rates.
    """

    def __init__(self, damping: float = DEFAULT_DAMPING):
        if not 0.0 < damping <= 1.0:
            raise ValueError(f"damping must be in (0, 1], got {damping}")
        self.damping = damping
        self.ticks = 0

    def step(self, signal: ScrollSignal) -> float:
        signal.current = clamp(signal.current + (signal.target - signal.current) * self.damping)
        self.ticks += 1
        return signal.current


class WheelInput:
    """Mouse-wheel style input: each delta nudges the target."""

    def __init__(self, signal: ScrollSignal, speed: float = WHEEL_SPEED):
        self.signal = signal
        self.speed = speed

    def scroll(self, delta_y: float):
        self.signal.nudge(delta_y * self.speed)


class TouchInput:
    """Touch drag input. Dragging up (decreasing y) scrolls forward."""

    def __init__(self, signal: ScrollSignal, speed: float = TOUCH_SPEED):
        self.signal = signal
        self.speed = speed
        self._last_y: Optional[float] = None

    def start(self, y: float):
        self._last_y = y

    def move(self, y: float):
        if self._last_y is None:
            self._last_y = y
            return
        self.signal.nudge((self._last_y - y) * self.speed)
        self._last_y = y

    def end(self):
        self._last_y = None
