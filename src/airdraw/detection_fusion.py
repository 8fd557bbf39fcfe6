"""
AirDraw Detection Fusion - Per-frame orchestration of the tracking pipeline.

    frame ─┬─► ColorDetector.find_marker ─┐
           │                              ├─► fuse_candidates ─► advance_track ─► PositionTracker
           └─► ShapeDetector.find_marker ─┘          │                │
                                                      └── Adaptive ◄───┘
                                                          ThresholdController

State machine:

    SEARCHING ──accept──► TRACKING ──3 misses──► LOST ──accept──► TRACKING
        └──────────────────3 misses──────────────►┘

The fusion policy and the track transition are plain functions over
TrackState values; DetectionFusion only threads the state through them.
"""

import math
import time
import logging
from typing import Callable, NamedTuple, Optional, Tuple

import cv2
import numpy as np

from .adaptive_threshold import AdaptiveThresholdController
from .color_detector import ColorDetector
from .color_mask import HsvRange
from .config import DetectionMode, TrackerSettings
from .log_utils import RateLimitedLog
from .models import (
    CalibrationProfile,
    DetectionResult,
    DetectionSource,
    FrameResult,
    FrameStatus,
    Point,
    ThresholdState,
    TrackState,
    TrackStatus,
    validate_frame,
)
from .position_tracker import PositionTracker
from .shape_detector import ShapeDetector


class TrackTransition(NamedTuple):
    """Result of advancing the track state by one frame."""
    state: TrackState
    emit_lost: bool      # first frame of a loss episode
    clear_trail: bool
    reacquired: bool


def frame_diagonal(frame_size: Tuple[int, int]) -> float:
    return math.hypot(frame_size[0], frame_size[1])


def fuse_candidates(
    track: TrackState,
    color_hit: Optional[Point],
    shape_hit: Optional[Point],
    frame_size: Tuple[int, int],
    settings: Optional[TrackerSettings] = None,
    shape_score: float = 0.0,
    color_score: float = 0.0,
) -> DetectionResult:
    """
    Reconcile the two detectors into at most one accepted position.

    Args:
        track: Current track state (lost status and last valid position)
        color_hit: Color detector result, None if missing or not run
        shape_hit: Shape detector result, None if missing or not run
        frame_size: (width, height) of the frame
        settings: Proximity and rejection tunables
        shape_score: Score of the accepted shape candidate, for reporting
        color_score: Color match margin of the color hit, for reporting

    Returns:
        DetectionResult with source NONE (nothing detected), REJECTED
        (detections too far from the last valid position while lost), or
        the accepted position and its source.
    """
    settings = settings or TrackerSettings()
    lost = track.is_lost
    last = track.last_valid_position
    max_allowed = settings.max_allowed_distance_ratio * frame_diagonal(frame_size)

    if color_hit is not None and shape_hit is not None:
        proximity = settings.lost_proximity_threshold if lost else settings.tracking_proximity_threshold
        if color_hit.distance_to(shape_hit) < proximity:
            return DetectionResult(shape_hit, DetectionSource.COLOR_AND_SHAPE, shape_score)

        if last is None:
            return DetectionResult(shape_hit, DetectionSource.SHAPE, shape_score)

        to_color = color_hit.distance_to(last)
        to_shape = shape_hit.distance_to(last)
        if to_shape < to_color:
            closer, source, score, distance = shape_hit, DetectionSource.SHAPE, shape_score, to_shape
        else:
            closer, source, score, distance = color_hit, DetectionSource.COLOR, color_score, to_color

        if lost and distance > max_allowed:
            return DetectionResult(None, DetectionSource.REJECTED, score)
        return DetectionResult(closer, source, score)

    if shape_hit is not None:
        single, source, score = shape_hit, DetectionSource.SHAPE, shape_score
    elif color_hit is not None:
        single, source, score = color_hit, DetectionSource.COLOR, color_score
    else:
        return DetectionResult(None, DetectionSource.NONE)

    if lost and last is not None and single.distance_to(last) > max_allowed:
        return DetectionResult(None, DetectionSource.REJECTED, score)
    return DetectionResult(single, source, score)


def advance_track(
    track: TrackState,
    result: DetectionResult,
    now: float,
    settings: Optional[TrackerSettings] = None,
) -> TrackTransition:
    """Apply one frame's fusion outcome to the track state."""
    settings = settings or TrackerSettings()

    if result.accepted:
        shape_center = track.last_shape_center
        if result.source in (DetectionSource.SHAPE, DetectionSource.COLOR_AND_SHAPE):
            shape_center = result.position
        state = TrackState(
            status=TrackStatus.TRACKING,
            last_valid_position=result.position,
            last_shape_center=shape_center,
            consecutive_misses=0,
            lost_since=None,
            last_seen=now,
            lost_reported=False,
        )
        return TrackTransition(state, emit_lost=False, clear_trail=False, reacquired=track.is_lost)

    misses = track.consecutive_misses + 1
    state = track.with_changes(consecutive_misses=misses)
    emit_lost = False

    if misses >= settings.lost_after_misses:
        lost_since = track.lost_since
        if lost_since is None:
            lost_since = track.last_seen if track.last_seen is not None else now
        emit_lost = not track.lost_reported
        state = state.with_changes(status=TrackStatus.LOST, lost_since=lost_since, lost_reported=True)

    clear_trail = misses > settings.clear_trail_after_misses
    return TrackTransition(state, emit_lost=emit_lost, clear_trail=clear_trail, reacquired=False)


class DetectionFusion:
    """
    Runs both detectors on each frame and produces a typed FrameResult.

    Calls must be serialized: at most one process_frame() in flight.

    Usage:
        fusion = DetectionFusion(TrackerSettings.from_env())
        fusion.calibrate(frame, (x, y))
        result = fusion.process_frame(frame)
        if result.is_found:
            draw(result.position)
    """

    def __init__(
        self,
        settings: Optional[TrackerSettings] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.settings = settings or TrackerSettings()
        self._clock = clock
        self.logger = logging.getLogger("DetectionFusion")
        self._diag = RateLimitedLog(self.logger, clock=clock)

        s = self.settings
        self.color_detector = ColorDetector(s.color, threshold=s.adaptive.base_color_threshold)
        self.shape_detector = ShapeDetector(s.shape, threshold=s.adaptive.base_threshold)
        self.controller = AdaptiveThresholdController(s.adaptive, clock=clock)
        self.tracker = PositionTracker(
            smoothing_enabled=s.smoothing_enabled,
            smoothing_strength=s.smoothing_strength,
            min_distance_threshold=s.min_move_threshold,
            capacity=s.trail_capacity,
            lost_after_misses=s.lost_after_misses,
        )
        self._base_ranges = HsvRange(
            hue_range=s.shape.hue_range,
            sat_range=s.shape.sat_range,
            val_range=s.shape.val_range,
            floor=s.shape.sat_val_floor,
        )

        self._profile: Optional[CalibrationProfile] = None
        self._track = TrackState()
        self._thresholds = self.controller.initial_state()
        self._drawing = False

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def is_calibrated(self) -> bool:
        return self._profile is not None

    @property
    def profile(self) -> Optional[CalibrationProfile]:
        return self._profile

    @property
    def track_state(self) -> TrackState:
        return self._track

    @property
    def threshold_state(self) -> ThresholdState:
        return self._thresholds

    @property
    def detection_mode(self) -> DetectionMode:
        return self.settings.detection_mode

    @property
    def drawing(self) -> bool:
        return self._drawing

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def calibrate(self, frame: np.ndarray, point: Tuple[int, int]) -> CalibrationProfile:
        """
        Calibrate color and shape from the marker under `point`.

        A failed shape calibration is not an error: the profile simply has
        no reference shape and the shape detector reports nothing.

        Raises:
            CalibrationError: frame missing or malformed
            OutOfBoundsError: point outside the frame
        """
        color = self.color_detector.calibrate(frame, point)
        reference = self.shape_detector.calibrate(frame, point, color)

        self._profile = CalibrationProfile(target_color=color, reference_shape=reference)
        self._track = TrackState()
        self._thresholds = self.controller.initial_state()
        self.tracker.reset()
        self.tracker.reset_lost_status()

        shape_text = reference.shape_type.display_name if reference else "none"
        self.logger.info(f"Calibrated: color RGB={color}, shape={shape_text}, mode={self.detection_mode.value}")
        return self._profile

    def set_detection_mode(self, mode) -> DetectionMode:
        """Accepts a DetectionMode or 'color' / 'shape' / anything else (combined)."""
        self.settings.detection_mode = DetectionMode.parse(mode)
        self.logger.info(f"Detection mode set to {self.settings.detection_mode.value}")
        return self.settings.detection_mode

    def set_sampling_step(self, step: int):
        self.settings.sampling_step = max(1, int(step))

    def configure_smoothing(self, enabled: bool, strength: float, min_move_threshold: float):
        self.settings.smoothing_enabled = enabled
        self.settings.smoothing_strength = min(1.0, max(0.0, strength))
        self.settings.min_move_threshold = max(0.0, min_move_threshold)
        self.tracker.configure(enabled, self.settings.smoothing_strength, self.settings.min_move_threshold)

    def set_drawing_status(self, is_drawing: bool):
        self._drawing = bool(is_drawing)

    def reset_position_history(self):
        """Clear the tracker and the shape center used for the proximity boost."""
        self.tracker.reset()
        self._track = self._track.with_changes(last_shape_center=None)

    def reset_lost_status(self):
        """Clear loss bookkeeping; the trail is kept."""
        self.tracker.reset_lost_status()
        status = self._track.status
        if status == TrackStatus.LOST:
            status = TrackStatus.TRACKING if self._track.last_valid_position is not None else TrackStatus.SEARCHING
        self._track = self._track.with_changes(
            status=status, consecutive_misses=0, lost_since=None, lost_reported=False
        )
        self._thresholds = self.controller.initial_state()

    # ------------------------------------------------------------------
    # Per-frame processing
    # ------------------------------------------------------------------

    def detect(self, frame: np.ndarray) -> Tuple[Optional[Point], Optional[Point], float, float]:
        """
        Run the enabled detectors with the current thresholds. Never raises.

        Returns:
            (color_hit, shape_hit, color_score, shape_score)
        """
        mode = self.detection_mode
        thresholds = self._thresholds
        color_hit = shape_hit = None
        color_score = shape_score = 0.0

        if mode.uses_color:
            color_hit, color_score = self.color_detector.find_marker_scored(
                frame,
                self._profile.target_color,
                self.settings.sampling_step,
                threshold=thresholds.color_threshold,
            )

        if mode.uses_shape and self.shape_detector.is_calibrated:
            ranges = None
            if self.settings.adaptive.adaptive_color_range:
                ranges = self.controller.color_ranges(thresholds, self._base_ranges)
            shape_hit = self.shape_detector.find_marker(
                frame,
                threshold=thresholds.shape_threshold,
                previous_center=self._track.last_shape_center,
                strictness=self.controller.strictness(thresholds),
                ranges=ranges,
            )
            candidate = self.shape_detector.last_candidate
            if shape_hit is not None and candidate is not None:
                shape_score = candidate.score

        return color_hit, shape_hit, color_score, shape_score

    def process_frame(self, frame: np.ndarray, now: Optional[float] = None) -> FrameResult:
        """
        Process one frame.

        Args:
            frame: BGR image, H x W x 3 uint8
            now: Timestamp of the frame (defaults to the fusion clock)

        Returns:
            FrameResult: FOUND with the smoothed position, LOST once per loss
            episode, NONE otherwise, or UNCALIBRATED before calibration.
        """
        if not self.is_calibrated:
            return FrameResult(FrameStatus.UNCALIBRATED, drawing=self._drawing)
        now = self._clock() if now is None else now

        frame_size = (0, 0)
        color_hit = shape_hit = None
        color_score = shape_score = 0.0
        try:
            validate_frame(frame)
            frame_size = (frame.shape[1], frame.shape[0])
            color_hit, shape_hit, color_score, shape_score = self.detect(frame)
        except (cv2.error, ValueError, TypeError, ZeroDivisionError) as exc:
            self._diag.warning("frame", f"Skipping frame: {exc}")

        result = fuse_candidates(
            self._track, color_hit, shape_hit, frame_size, self.settings, shape_score, color_score
        )
        if result.source == DetectionSource.REJECTED:
            self._diag.debug("rejected", "Detections rejected: too far from last valid position while lost")

        previous = self._track
        transition = advance_track(previous, result, now, self.settings)
        self._track = transition.state

        if transition.emit_lost:
            self.logger.info(f"Marker lost after {transition.state.consecutive_misses} frames without detection")
        elif transition.reacquired:
            self.logger.info(f"Marker reacquired via {result.source.value}")

        self._thresholds = self.controller.update(
            self._thresholds,
            self._track.is_lost,
            lost_since=self._track.lost_since,
            now=now,
        )

        if transition.clear_trail:
            self.tracker.clear_trail()

        smoothed = self.tracker.update(result.position)
        common = dict(source=result.source, score=result.score, drawing=self._drawing, trail=self.tracker.trail)

        if smoothed is not None:
            return FrameResult.found(smoothed, frame_size, **common)
        if transition.emit_lost:
            return FrameResult.lost(frame_size, **common)
        return FrameResult.empty(frame_size, **common)
