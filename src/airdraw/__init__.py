"""
AirDraw - Colored Marker Tracking Engine for Freehand Drawing

Turns a live camera stream into a continuously tracked 2D position of one
calibrated physical marker.

Features:
- Color-similarity detection with perceptual distance
- Shape/contour detection against a calibrated reference signature
- Adaptive strictness that escalates while the marker is lost
- Fusion of both detectors with an explicit found/lost state machine
- Exponential smoothing, jitter suppression and a bounded trail

Quick Start:
    from airdraw import DetectionFusion, TrackerSettings

    fusion = DetectionFusion(TrackerSettings.from_env())

    # User clicks the marker
    fusion.calibrate(frame, (x, y))

    # Per-frame loop
    while True:
        result = fusion.process_frame(frame)
        if result.is_found:
            draw_to(result.position)
        elif result.is_lost:
            lift_pen()
"""

__version__ = "1.0.0"
__author__ = "AirDraw Team"

# Shared types
from .models import (
    Point,
    ShapeType,
    ShapeSignature,
    CalibrationProfile,
    DetectionSource,
    DetectionResult,
    ThresholdTier,
    ThresholdState,
    TrackStatus,
    TrackState,
    FrameStatus,
    FrameResult,
    OutOfBoundsError,
    CalibrationError,
)

# Configuration
from .config import (
    DetectionMode,
    ColorDetectorConfig,
    ShapeDetectorConfig,
    AdaptiveConfig,
    TrackerSettings,
)

# Detectors
from .color_detector import ColorDetector
from .color_mask import ColorMaskGenerator, HsvRange
from .shape_analyzer import ShapeAnalyzer, ShapeMatch
from .shape_detector import ShapeDetector, ShapeCandidate

# Tracking
from .adaptive_threshold import AdaptiveThresholdController
from .detection_fusion import DetectionFusion, fuse_candidates, advance_track
from .position_tracker import PositionTracker

# Video pipeline
from .video_pipeline import (
    FrameQueue,
    FramePacket,
    FrameMetadata,
    ThreadedFrameSource,
    MarkerPipeline,
)

__all__ = [
    # Version
    "__version__",

    # Types
    "Point",
    "ShapeType",
    "ShapeSignature",
    "CalibrationProfile",
    "DetectionSource",
    "DetectionResult",
    "ThresholdTier",
    "ThresholdState",
    "TrackStatus",
    "TrackState",
    "FrameStatus",
    "FrameResult",
    "OutOfBoundsError",
    "CalibrationError",

    # Config
    "DetectionMode",
    "ColorDetectorConfig",
    "ShapeDetectorConfig",
    "AdaptiveConfig",
    "TrackerSettings",

    # Detectors
    "ColorDetector",
    "ColorMaskGenerator",
    "HsvRange",
    "ShapeAnalyzer",
    "ShapeMatch",
    "ShapeDetector",
    "ShapeCandidate",

    # Tracking
    "AdaptiveThresholdController",
    "DetectionFusion",
    "fuse_candidates",
    "advance_track",
    "PositionTracker",

    # Video
    "FrameQueue",
    "FramePacket",
    "FrameMetadata",
    "ThreadedFrameSource",
    "MarkerPipeline",
]
