"""
AirDraw Models - Shared value types for the marker-tracking pipeline.

Per-frame transition state (TrackState, ThresholdState) is modeled as plain
dataclasses that are passed into and returned from each processing step, so
the transition functions can be exercised in isolation.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import NamedTuple, Optional, Tuple

import numpy as np


class OutOfBoundsError(ValueError):
    """Calibration point lies outside [0, width) x [0, height)."""


class CalibrationError(ValueError):
    """Calibration was attempted with a missing or malformed frame."""


class Point(NamedTuple):
    """2D position in frame pixel coordinates."""
    x: float
    y: float

    def distance_to(self, other: "Point") -> float:
        return math.hypot(self.x - other[0], self.y - other[1])

    def as_int(self) -> Tuple[int, int]:
        return int(self.x), int(self.y)


class ShapeType(Enum):
    """Classified marker outline."""
    UNKNOWN = "Unknown"
    CIRCLE = "Circle"
    TRIANGLE = "Triangle"
    RECTANGLE = "Rectangle"
    POLYGON = "Polygon"

    @property
    def display_name(self) -> str:
        return self.value


@dataclass(frozen=True)
class ShapeSignature:
    """Geometric fingerprint of a contour."""
    shape_type: ShapeType
    area: float
    compactness: float  # 4*pi*area / perimeter^2, 1.0 = perfect circle
    vertex_count: int


@dataclass(frozen=True)
class CalibrationProfile:
    """Result of one calibration; replaced wholesale by the next one."""
    target_color: Tuple[int, int, int]  # RGB
    reference_shape: Optional[ShapeSignature] = None

    @property
    def has_shape(self) -> bool:
        return self.reference_shape is not None


class DetectionSource(Enum):
    """Which detector produced the accepted position."""
    NONE = "none"
    COLOR = "color"
    SHAPE = "shape"
    COLOR_AND_SHAPE = "color+shape"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of the fusion policy for one frame."""
    position: Optional[Point]
    source: DetectionSource
    score: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.position is not None


class ThresholdTier(Enum):
    """Strictness level of the adaptive controller."""
    NORMAL = 0
    MEDIUM = 1
    STRICT = 2


@dataclass(frozen=True)
class ThresholdState:
    """
    Current acceptance strictness of both detectors.

    Lower color threshold = stricter color matching.
    Higher shape threshold = stricter shape matching.
    """
    color_threshold: float
    shape_threshold: float
    lost_since: Optional[float] = None
    color_tier: ThresholdTier = ThresholdTier.NORMAL
    shape_tier: ThresholdTier = ThresholdTier.NORMAL
    # Extra HSV tolerance added to the mask ranges during prolonged loss
    hue_expansion: float = 0.0
    sat_expansion: float = 0.0
    val_expansion: float = 0.0

    @property
    def tier(self) -> ThresholdTier:
        return max(self.color_tier, self.shape_tier, key=lambda t: t.value)

    def with_changes(self, **changes) -> "ThresholdState":
        return replace(self, **changes)


class TrackStatus(Enum):
    """Fusion state machine."""
    SEARCHING = "searching"  # never detected since calibration
    TRACKING = "tracking"
    LOST = "lost"


@dataclass(frozen=True)
class TrackState:
    """Lost/found bookkeeping owned by DetectionFusion."""
    status: TrackStatus = TrackStatus.SEARCHING
    last_valid_position: Optional[Point] = None
    last_shape_center: Optional[Point] = None
    consecutive_misses: int = 0
    lost_since: Optional[float] = None
    last_seen: Optional[float] = None
    lost_reported: bool = False

    @property
    def is_lost(self) -> bool:
        return self.status == TrackStatus.LOST

    def with_changes(self, **changes) -> "TrackState":
        return replace(self, **changes)


class FrameStatus(Enum):
    """Tag of a per-frame result delivered to the consumer."""
    FOUND = "found"
    LOST = "lost"              # emitted once per loss episode
    NONE = "none"              # nothing to report this frame
    UNCALIBRATED = "uncalibrated"


@dataclass(frozen=True)
class FrameResult:
    """Typed per-frame output: Found(point) | Lost | nothing."""
    status: FrameStatus
    frame_size: Tuple[int, int] = (0, 0)  # (width, height)
    position: Optional[Point] = None
    source: DetectionSource = DetectionSource.NONE
    score: float = 0.0
    drawing: bool = False
    trail: Tuple[Point, ...] = field(default_factory=tuple)

    @classmethod
    def found(cls, position: Point, frame_size: Tuple[int, int], **kwargs) -> "FrameResult":
        return cls(FrameStatus.FOUND, frame_size, position, **kwargs)

    @classmethod
    def lost(cls, frame_size: Tuple[int, int], **kwargs) -> "FrameResult":
        return cls(FrameStatus.LOST, frame_size, None, **kwargs)

    @classmethod
    def empty(cls, frame_size: Tuple[int, int] = (0, 0), **kwargs) -> "FrameResult":
        return cls(FrameStatus.NONE, frame_size, None, **kwargs)

    @property
    def is_found(self) -> bool:
        return self.status == FrameStatus.FOUND

    @property
    def is_lost(self) -> bool:
        return self.status == FrameStatus.LOST


def validate_frame(frame) -> np.ndarray:
    """
    Check that `frame` is an H x W x 3 uint8 image (BGR, possibly strided).

    Raises:
        CalibrationError: frame is missing or malformed
    """
    if frame is None:
        raise CalibrationError("Frame is missing")
    if not isinstance(frame, np.ndarray):
        raise CalibrationError(f"Frame must be a numpy array, got {type(frame).__name__}")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise CalibrationError(f"Frame must be H x W x 3, got shape {frame.shape}")
    if frame.dtype != np.uint8:
        raise CalibrationError(f"Frame must be uint8, got {frame.dtype}")
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise CalibrationError("Frame is empty")
    return frame
