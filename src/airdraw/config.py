"""
AirDraw Configuration - Tunables for detection, adaptation and smoothing.

All tunables are dataclasses with documented defaults. TrackerSettings is the
recognized configuration surface; TrackerSettings.from_env() reads overrides
from the environment (and from a .env file when one is found).

Usage:
    from airdraw.config import TrackerSettings

    settings = TrackerSettings.from_env()
    fusion = DetectionFusion(settings)
"""

import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("AirDrawConfig")

ENV_PREFIX = "AIRDRAW_"


def _load_env() -> Optional[str]:
    """Load environment variables from the first .env file found."""
    possible_paths = [
        Path(__file__).resolve().parents[2] / ".env",  # src/airdraw/../../.env
        Path.cwd() / ".env",
        Path.home() / ".env",
    ]
    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path, override=False)
            return str(env_path)
    return None


class DetectionMode(Enum):
    """Which detectors run each frame."""
    COLOR = "color"
    SHAPE = "shape"
    COMBINED = "combined"

    @classmethod
    def parse(cls, value) -> "DetectionMode":
        """Parse 'color' / 'shape'; anything else means combined."""
        if isinstance(value, DetectionMode):
            return value
        text = str(value or "").strip().lower()
        if text == "color":
            return cls.COLOR
        if text == "shape":
            return cls.SHAPE
        return cls.COMBINED

    @property
    def uses_color(self) -> bool:
        return self in (DetectionMode.COLOR, DetectionMode.COMBINED)

    @property
    def uses_shape(self) -> bool:
        return self in (DetectionMode.SHAPE, DetectionMode.COMBINED)


@dataclass
class ColorDetectorConfig:
    """Color-similarity scan parameters."""
    sample_radius: int = 5            # calibration patch is (2r+1)^2
    quantize_step: int = 5            # per-channel rounding during calibration
    low_saturation: float = 0.2       # below this the mode is suspected background
    alt_frequency_ratio: float = 0.3  # alternatives must be this frequent vs. the mode
    # Perceptual distance weights
    rgb_weight: float = 0.5
    hue_weight: float = 30.0
    sat_weight: float = 10.0
    bright_weight: float = 10.0


@dataclass
class ShapeDetectorConfig:
    """Mask, contour and scoring parameters of the shape detector."""
    hue_range: int = 15
    sat_range: int = 50
    val_range: int = 50
    sat_val_floor: int = 30
    morph_kernel_size: int = 5
    open_iterations: int = 1
    close_iterations: int = 1
    calibration_max_distance: float = 50.0   # px, nearest-centroid fallback
    min_area: float = 500.0                  # absolute clamps of the area window
    max_area: float = 2000.0
    min_area_fraction: float = 0.002         # of frame area, Normal tier
    max_area_fraction: float = 0.03
    strict_min_area_fraction: float = 0.004  # window tightens toward these
    strict_max_area_fraction: float = 0.015
    min_base_score: float = 0.4
    max_tracking_distance: float = 200.0
    proximity_floor: float = 0.4
    proximity_boost: float = 1.3


@dataclass
class AdaptiveConfig:
    """
    Tiered strictness escalation while the marker is lost.

    Color thresholds are distances (lower = stricter); shape thresholds are
    acceptance scores (higher = stricter).
    """
    enabled: bool = True
    base_threshold: float = 0.5
    medium_threshold: float = 0.6
    strict_threshold: float = 0.7
    base_color_threshold: float = 50.0
    medium_color_threshold: float = 40.0
    strict_color_threshold: float = 30.0
    color_delay_seconds: float = 1.0   # Normal -> Medium for color
    shape_delay_seconds: float = 1.0   # Normal -> Medium for shape
    strict_delay_seconds: float = 2.0  # Medium -> Strict for both
    strict_ramp_seconds: float = 1.0
    shape_relax_step: float = 0.03
    color_relax_step: float = 1.5
    # Optional widening of HSV ranges during prolonged loss
    adaptive_color_range: bool = False
    color_range_delay_seconds: float = 3.0
    color_range_step: float = 1.0
    max_hue_expansion: float = 10.0
    max_sat_expansion: float = 35.0
    max_val_expansion: float = 35.0

    def __post_init__(self):
        self.base_threshold = min(1.0, max(0.0, self.base_threshold))
        self.strict_threshold = min(1.5, max(self.base_threshold, self.strict_threshold))
        self.medium_threshold = min(self.strict_threshold, max(self.base_threshold, self.medium_threshold))
        self.base_color_threshold = max(5.0, self.base_color_threshold)
        self.strict_color_threshold = min(self.base_color_threshold, max(1.0, self.strict_color_threshold))
        self.medium_color_threshold = min(
            self.base_color_threshold, max(self.strict_color_threshold, self.medium_color_threshold)
        )
        self.strict_delay_seconds = max(
            self.strict_delay_seconds, self.color_delay_seconds, self.shape_delay_seconds
        )


@dataclass
class TrackerSettings:
    """Recognized configuration surface of the tracking pipeline."""
    sampling_step: int = 2
    smoothing_enabled: bool = True
    smoothing_strength: float = 0.7
    min_move_threshold: float = 2.0
    detection_mode: DetectionMode = DetectionMode.COMBINED
    trail_capacity: int = 20
    lost_after_misses: int = 3
    clear_trail_after_misses: int = 10
    lost_proximity_threshold: float = 30.0     # px, detectors agree while lost
    tracking_proximity_threshold: float = 50.0
    max_allowed_distance_ratio: float = 0.15   # of frame diagonal
    color: ColorDetectorConfig = field(default_factory=ColorDetectorConfig)
    shape: ShapeDetectorConfig = field(default_factory=ShapeDetectorConfig)
    adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)

    def __post_init__(self):
        self.sampling_step = max(1, int(self.sampling_step))
        self.smoothing_strength = min(1.0, max(0.0, float(self.smoothing_strength)))
        self.min_move_threshold = max(0.0, float(self.min_move_threshold))
        self.detection_mode = DetectionMode.parse(self.detection_mode)

    @property
    def adaptive_detection_enabled(self) -> bool:
        return self.adaptive.enabled

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True, **overrides) -> "TrackerSettings":
        """
        Build settings from AIRDRAW_* environment variables.

        Args:
            load_dotenv_file: Look for a .env file first
            **overrides: Explicit values that win over the environment
        """
        if load_dotenv_file:
            env_path = _load_env()
            if env_path:
                logger.debug(f"Loaded environment from {env_path}")

        values = {}
        step = _env_number("SAMPLING_STEP", int)
        if step is not None:
            values["sampling_step"] = step
        enabled = _env_bool("SMOOTHING_ENABLED")
        if enabled is not None:
            values["smoothing_enabled"] = enabled
        strength = _env_number("SMOOTHING_STRENGTH", float)
        if strength is not None:
            values["smoothing_strength"] = strength
        min_move = _env_number("MIN_MOVE_THRESHOLD", float)
        if min_move is not None:
            values["min_move_threshold"] = min_move
        mode = os.environ.get(ENV_PREFIX + "DETECTION_MODE")
        if mode:
            values["detection_mode"] = DetectionMode.parse(mode)

        adaptive = AdaptiveConfig()
        adaptive_enabled = _env_bool("ADAPTIVE")
        if adaptive_enabled is not None:
            adaptive.enabled = adaptive_enabled
        color_range = _env_bool("ADAPTIVE_COLOR_RANGE")
        if color_range is not None:
            adaptive.adaptive_color_range = color_range
        values["adaptive"] = adaptive

        values.update(overrides)
        return cls(**values)


def _env_number(name: str, kind):
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return kind(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}")
        return None


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")
