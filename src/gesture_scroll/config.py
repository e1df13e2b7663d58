"""gesture-scroll configuration.

Loaded from YAML into dataclasses. Every section is optional; unknown keys
are ignored so older config files keep working.

Example:
    assets:
      base_url: https://storage.googleapis.com/mediapipe-models/hand_landmarker/hand_landmarker/float16/1/
      files: [hand_landmarker.task]
    signal:
      deadzone_low: 0.2
      deadzone_high: 0.8
      damping: 0.05
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from gesture_scroll.camera import CameraConstraints
from gesture_scroll.engine import MODEL_BASE_URL, MODEL_FILE, EngineOptions
from gesture_scroll.errors import ConfigError
from gesture_scroll.scroll_signal import (
    DEFAULT_DAMPING,
    DEFAULT_DEADZONE_HIGH,
    DEFAULT_DEADZONE_LOW,
    INDEX_FINGER_TIP,
    TOUCH_SPEED,
    WHEEL_SPEED,
)
from gesture_scroll.transfer import DEFAULT_PROGRESS_INTERVAL

logger = logging.getLogger("gesture_scroll.config")

DEFAULT_CONFIG_PATH = Path("gesture_scroll.yml")


@dataclass
class AssetsConfig:
    base_url: str = MODEL_BASE_URL
    files: list[str] = field(default_factory=lambda: [MODEL_FILE])
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL


@dataclass
class SignalConfig:
    deadzone_low: float = DEFAULT_DEADZONE_LOW
    deadzone_high: float = DEFAULT_DEADZONE_HIGH
    damping: float = DEFAULT_DAMPING
    tracked_landmark: int = INDEX_FINGER_TIP
    wheel_speed: float = WHEEL_SPEED
    touch_speed: float = TOUCH_SPEED
    fps: int = 60


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8765


@dataclass
class AppConfig:
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    engine: EngineOptions = field(default_factory=EngineOptions)
    camera: CameraConstraints = field(default_factory=CameraConstraints)
    signal: SignalConfig = field(default_factory=SignalConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> AppConfig:
        try:
            config = cls(
                assets=_section(AssetsConfig, data.get("assets")),
                engine=_section(EngineOptions, data.get("engine")),
                camera=_section(CameraConstraints, data.get("camera")),
                signal=_section(SignalConfig, data.get("signal")),
                server=_section(ServerConfig, data.get("server")),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(str(e)) from e
        config.validate()
        return config

    def validate(self):
        s = self.signal
        if not s.deadzone_low < s.deadzone_high:
            raise ConfigError(f"signal.deadzone_low ({s.deadzone_low}) must be below deadzone_high ({s.deadzone_high})")
        if not 0.0 < s.damping <= 1.0:
            raise ConfigError(f"signal.damping must be in (0, 1], got {s.damping}")
        if s.fps <= 0:
            raise ConfigError(f"signal.fps must be positive, got {s.fps}")
        if not self.assets.files:
            raise ConfigError("assets.files must list at least one file")
        if len(set(self.assets.files)) != len(self.assets.files):
            raise ConfigError("assets.files contains duplicates")

    def to_dict(self) -> dict:
        return asdict(self)

    def to_yaml(self, path: str | Path):
        """Save the configuration to YAML."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


def _section(cls, data: Optional[dict]):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section for {cls.__name__} must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML, falling back to defaults if the file is missing."""
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        logger.debug("Config %s not found, using defaults", path)
        return AppConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return AppConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return AppConfig.from_dict(data)
