#!/usr/bin/env python3
"""
Unit Tests for the AirDraw Marker Tracking Engine

Covers the pipeline bottom-up on synthetic frames:
A. Color space math and color calibration/detection
B. HSV masks (including the red hue seam)
C. Shape signatures, shape calibration and detection
D. Adaptive strictness tiers
E. Fusion policy and the found/lost state machine
F. Smoothing, jitter suppression and the trail
G. Frame queue, configuration and rate-limited logging

Run directly (python run_tests.py) or with pytest.
"""

import sys
import os
import math
import time
import logging

import numpy as np

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from airdraw.adaptive_threshold import AdaptiveThresholdController
from airdraw.color_detector import ColorDetector
from airdraw.color_mask import ColorMaskGenerator, HsvRange
from airdraw.colorspace import (
    hue_distance,
    quantize_color,
    rgb_to_hsb,
    rgb_to_hsb_array,
    rgb_to_opencv_hsv,
)
from airdraw.config import AdaptiveConfig, DetectionMode, TrackerSettings
from airdraw.detection_fusion import DetectionFusion, advance_track, fuse_candidates
from airdraw.log_utils import RateLimitedLog
from airdraw.models import (
    CalibrationError,
    DetectionResult,
    DetectionSource,
    FrameStatus,
    OutOfBoundsError,
    Point,
    ShapeSignature,
    ShapeType,
    ThresholdTier,
    TrackState,
    TrackStatus,
    validate_frame,
)
from airdraw.position_tracker import PositionTracker
from airdraw.shape_analyzer import ShapeAnalyzer
from airdraw.shape_detector import ShapeDetector, proximity_factor
from airdraw.video_pipeline import FramePacket, FrameQueue, MarkerPipeline, ThreadedFrameSource

GRAY = (128, 128, 128)
ORANGE_RGB = (200, 100, 50)
BLUE_RGB = (30, 60, 220)
DRIFTED_BLUE_RGB = (106, 30, 220)


def make_frame(width=640, height=480, color=GRAY):
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:] = color
    return frame


def draw_block(frame, x, y, size, rgb):
    """Fill a size x size block with its top-left corner at (x, y)."""
    frame[y:y + size, x:x + size] = (rgb[2], rgb[1], rgb[0])
    return frame


def square_contour(x, y, size):
    return np.array([[[x, y]], [[x + size, y]], [[x + size, y + size]], [[x, y + size]]], dtype=np.int32)


def banner(title):
    print("\n" + "="*60)
    print(title)
    print("="*60)


# ----------------------------------------------------------------------
# A. Color space and color detector
# ----------------------------------------------------------------------

def test_colorspace():
    banner("TEST A1: Color space")
    h, s, b = rgb_to_hsb(255, 0, 0)
    assert (h, s, b) == (0.0, 1.0, 1.0)

    h, s, b = rgb_to_hsb(128, 128, 128)
    assert h == 0.0 and s == 0.0 and abs(b - 128 / 255.0) < 1e-9

    assert abs(hue_distance(0.05, 0.95) - 0.1) < 1e-9
    assert abs(hue_distance(0.2, 0.4) - 0.2) < 1e-9

    assert rgb_to_opencv_hsv(255, 0, 0) == (0, 255, 255)
    assert quantize_color(201, 99, 52) == (200, 100, 50)
    assert quantize_color(254, 0, 3) == (255, 0, 5)

    colors = np.array([[ORANGE_RGB, BLUE_RGB, GRAY, (0, 0, 0)]], dtype=np.uint8)
    hue, sat, bright = rgb_to_hsb_array(colors)
    for i, color in enumerate(colors[0]):
        expected = rgb_to_hsb(*(int(c) for c in color))
        assert abs(hue[0, i] - expected[0]) < 1e-9
        assert abs(sat[0, i] - expected[1]) < 1e-9
        assert abs(bright[0, i] - expected[2]) < 1e-9


def test_color_calibration():
    banner("TEST A2: Color calibration")
    detector = ColorDetector()
    frame = draw_block(make_frame(120, 120), 50, 50, 20, ORANGE_RGB)

    assert detector.calibrate(frame, (59, 59)) == ORANGE_RGB

    # Mostly gray patch, but the block covers 3 of 11 columns (>= 30% of the mode)
    assert detector.calibrate(frame, (47, 59)) == ORANGE_RGB

    # Pure background: nothing saturated to fall back to
    assert detector.calibrate(frame, (10, 10)) == (130, 130, 130)

    try:
        detector.calibrate(frame, (120, 10))
        assert False, "Point outside the frame should raise"
    except OutOfBoundsError:
        pass

    try:
        detector.calibrate(None, (10, 10))
        assert False, "Missing frame should raise"
    except CalibrationError:
        pass


def test_color_find_marker():
    banner("TEST A3: Color find marker")
    detector = ColorDetector()
    frame = draw_block(make_frame(120, 120), 50, 50, 20, ORANGE_RGB)

    center = detector.find_marker(frame, ORANGE_RGB, sampling_step=1, threshold=50)
    assert center is not None
    assert center.distance_to((59, 59)) < 1.0
    # Centroid stays inside the bounding box of the matched pixels
    assert 50 <= center.x <= 69 and 50 <= center.y <= 69

    again = detector.find_marker(frame, ORANGE_RGB, sampling_step=1, threshold=50)
    assert again == center

    strided = detector.find_marker(frame, ORANGE_RGB, sampling_step=2, threshold=50)
    assert strided is not None and strided.distance_to((59, 59)) < 1.5

    # Score is the best pixel's margin under the threshold
    center, score = detector.find_marker_scored(frame, ORANGE_RGB, sampling_step=1, threshold=50)
    assert center == again and abs(score - 1.0) < 1e-9
    center, score = detector.find_marker_scored(frame, (205, 100, 50), sampling_step=1, threshold=50)
    assert center is not None and 0.0 < score < 1.0
    assert detector.find_marker_scored(make_frame(120, 120), ORANGE_RGB) == (None, 0.0)

    assert detector.find_marker(make_frame(120, 120), ORANGE_RGB) is None
    assert detector.find_marker(frame, None) is None
    assert detector.find_marker(None, ORANGE_RGB) is None
    assert detector.find_marker(np.zeros((10, 10), dtype=np.uint8), ORANGE_RGB) is None


def test_validate_frame():
    banner("TEST A4: Frame validation")
    frame = make_frame(40, 30)
    assert validate_frame(frame) is frame
    assert validate_frame(frame[:, ::2]).shape == (30, 20, 3)

    for bad in (None, [[1, 2, 3]], np.zeros((30, 40), dtype=np.uint8),
                np.zeros((30, 40, 3), dtype=np.float32), np.zeros((0, 40, 3), dtype=np.uint8)):
        try:
            validate_frame(bad)
            assert False, f"Frame {type(bad).__name__} should be rejected"
        except CalibrationError:
            pass


# ----------------------------------------------------------------------
# B. Color mask
# ----------------------------------------------------------------------

def test_color_mask_red_wrap():
    banner("TEST B1: Red hue seam mask")
    generator = ColorMaskGenerator()
    assert generator.wraps(2)
    assert generator.wraps(170)
    assert not generator.wraps(90)

    hsv = np.array([[[0, 255, 255], [175, 255, 255], [90, 255, 255], [5, 10, 255]]], dtype=np.uint8)
    mask = generator.create_color_mask(hsv, (255, 0, 0))
    assert list(mask[0]) == [255, 255, 0, 0]


def test_color_mask_plain_hue():
    banner("TEST B2: Plain hue mask")
    generator = ColorMaskGenerator()
    hsv = np.array([[[60, 255, 255], [90, 255, 255], [0, 255, 255]]], dtype=np.uint8)
    mask = generator.create_color_mask(hsv, (0, 255, 0))
    assert list(mask[0]) == [255, 0, 0]

    wide = generator.create_color_mask(hsv, (0, 255, 0), HsvRange(hue_range=35))
    assert list(wide[0]) == [255, 255, 0]


# ----------------------------------------------------------------------
# C. Shapes
# ----------------------------------------------------------------------

def test_shape_classification():
    banner("TEST C1: Shape classification")
    assert ShapeAnalyzer.classify_shape(0.95, 12) == ShapeType.CIRCLE
    assert ShapeAnalyzer.classify_shape(0.5, 3) == ShapeType.TRIANGLE
    assert ShapeAnalyzer.classify_shape(0.78, 4) == ShapeType.RECTANGLE
    assert ShapeAnalyzer.classify_shape(0.6, 6) == ShapeType.POLYGON
    assert ShapeAnalyzer.classify_shape(0.9, 6) == ShapeType.POLYGON
    assert ShapeType.CIRCLE.display_name == "Circle"

    signature = ShapeAnalyzer.measure(square_contour(10, 10, 30))
    assert signature.shape_type == ShapeType.RECTANGLE
    assert signature.vertex_count == 4
    assert abs(signature.area - 900.0) < 1e-6
    assert abs(signature.compactness - math.pi / 4) < 1e-3


def test_square_against_circle_reference():
    banner("TEST C2: Square vs circle")
    circle = ShapeSignature(ShapeType.CIRCLE, 1000.0, 1.0, 12)
    square = ShapeSignature(ShapeType.RECTANGLE, 1000.0, math.pi / 4, 4)

    match = ShapeAnalyzer.match_components(square, circle)
    assert match.type_match == 0.3
    assert match.area_similarity == 1.0
    assert match.vertex_similarity == 1.0
    assert abs(match.score - (0.12 + 0.2 + 0.2 * math.pi / 4 + 0.2)) < 1e-9
    # Accepted only below the Strict tier threshold
    assert match.score < 0.7

    assert abs(ShapeAnalyzer.score_signature(circle, circle) - 1.0) < 1e-9

    triangle = ShapeSignature(ShapeType.TRIANGLE, 1000.0, 0.6, 3)
    assert ShapeAnalyzer.match_components(triangle, square).vertex_similarity == 0.5

    assert ShapeAnalyzer().calculate_shape_match_score(square_contour(0, 0, 10)) == 0.0


def test_shape_detector():
    banner("TEST C3: Shape detector")
    frame = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)
    detector = ShapeDetector()

    signature = detector.calibrate(frame, (319, 239), BLUE_RGB)
    assert signature is not None
    assert signature.shape_type == ShapeType.RECTANGLE
    assert detector.is_calibrated

    center = detector.find_marker(frame)
    assert center is not None
    assert center.distance_to((319.5, 239.5)) < 2.0
    assert detector.last_candidate.accepted

    # Moved 30 px: still accepted thanks to the proximity boost
    moved = draw_block(make_frame(), 330, 220, 40, BLUE_RGB)
    center = detector.find_marker(moved, previous_center=center)
    assert center is not None and center.distance_to((349.5, 239.5)) < 2.0

    # Above-threshold requirement: candidate kept for diagnostics only
    assert detector.find_marker(frame, threshold=1.5) is None
    assert detector.last_candidate is not None
    assert not detector.last_candidate.accepted

    assert detector.find_marker(make_frame()) is None
    assert detector.last_candidate is None
    assert detector.find_marker(None) is None


def test_shape_calibration_failure():
    banner("TEST C4: Shape calibration failure")
    frame = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)
    detector = ShapeDetector()

    assert detector.calibrate(frame, (20, 20), BLUE_RGB) is None
    assert not detector.is_calibrated
    assert detector.find_marker(frame) is None

    try:
        detector.calibrate(frame, (-1, 20), BLUE_RGB)
        assert False, "Negative coordinates should raise"
    except OutOfBoundsError:
        pass


def test_proximity_and_area_window():
    banner("TEST C5: Proximity and area window")
    assert proximity_factor(Point(0, 0), None) == 1.0
    assert abs(proximity_factor(Point(0, 0), Point(0, 0)) - 1.3) < 1e-9
    assert abs(proximity_factor(Point(100, 0), Point(0, 0)) - 0.65) < 1e-9
    assert abs(proximity_factor(Point(500, 0), Point(0, 0)) - 0.52) < 1e-9

    detector = ShapeDetector()
    low, high = detector.area_window(640, 480)
    assert abs(low - 614.4) < 1e-6 and high == 2000.0
    low, high = detector.area_window(640, 480, strictness=1.0)
    assert abs(low - 1228.8) < 1e-6 and high == 2000.0
    low, high = detector.area_window(100, 100)
    assert low == 500.0 and abs(high - 300.0) < 1e-6


# ----------------------------------------------------------------------
# D. Adaptive thresholds
# ----------------------------------------------------------------------

def test_adaptive_tiers():
    banner("TEST D1: Adaptive tiers")
    controller = AdaptiveThresholdController(AdaptiveConfig())
    state = controller.initial_state()
    assert state.shape_threshold == 0.5 and state.color_threshold == 50.0

    state = controller.update(state, True, lost_since=0.0, now=0.5)
    assert state.tier == ThresholdTier.NORMAL
    assert state.shape_threshold == 0.5

    state = controller.update(state, True, lost_since=0.0, now=1.5)
    assert state.shape_tier == ThresholdTier.MEDIUM
    assert abs(state.shape_threshold - 0.55) < 1e-9
    assert abs(state.color_threshold - 45.0) < 1e-9

    state = controller.update(state, True, lost_since=0.0, now=2.5)
    assert state.tier == ThresholdTier.STRICT
    assert abs(state.shape_threshold - 0.65) < 1e-9
    assert abs(state.color_threshold - 35.0) < 1e-9

    state = controller.update(state, True, lost_since=0.0, now=10.0)
    assert abs(state.shape_threshold - 0.7) < 1e-9
    assert abs(state.color_threshold - 30.0) < 1e-9
    assert abs(controller.strictness(state) - 1.0) < 1e-9

    # Reacquired: tier snaps back, thresholds relax by one step per frame
    state = controller.update(state, False, now=10.1)
    assert state.tier == ThresholdTier.NORMAL
    assert state.lost_since is None
    assert abs(state.shape_threshold - 0.67) < 1e-9
    assert abs(state.color_threshold - 31.5) < 1e-9

    for _ in range(20):
        state = controller.update(state, False, now=10.2)
    assert state.shape_threshold == 0.5 and state.color_threshold == 50.0


def test_adaptive_disabled_and_color_range():
    banner("TEST D2: Adaptive disabled / color range")
    controller = AdaptiveThresholdController(AdaptiveConfig(enabled=False))
    state = controller.update(controller.initial_state(), True, lost_since=0.0, now=10.0)
    assert state.shape_threshold == 0.5 and state.color_threshold == 50.0
    assert state.tier == ThresholdTier.NORMAL

    controller = AdaptiveThresholdController(AdaptiveConfig(adaptive_color_range=True))
    state = controller.update(controller.initial_state(), True, lost_since=0.0, now=1.0)
    assert state.hue_expansion == 0.0
    state = controller.update(state, True, lost_since=0.0, now=3.5)
    assert state.hue_expansion == 1.0
    assert controller.color_ranges(state, HsvRange()).hue_range == 16
    for _ in range(50):
        state = controller.update(state, True, lost_since=0.0, now=4.0)
    assert state.hue_expansion == 10.0 and state.sat_expansion == 35.0

    state = controller.update(state, False, now=4.1)
    assert state.hue_expansion == 0.0


# ----------------------------------------------------------------------
# E. Fusion
# ----------------------------------------------------------------------

def test_fusion_policy():
    banner("TEST E1: Fusion policy")
    settings = TrackerSettings()
    size = (640, 480)  # diagonal 800, max allowed distance 120

    result = fuse_candidates(TrackState(), Point(100, 100), Point(140, 100), size, settings)
    assert result.position == Point(140, 100)
    assert result.source == DetectionSource.COLOR_AND_SHAPE

    result = fuse_candidates(TrackState(), Point(100, 100), Point(300, 100), size, settings)
    assert result.source == DetectionSource.SHAPE

    lost = TrackState(status=TrackStatus.LOST, last_valid_position=Point(100, 100))
    result = fuse_candidates(lost, Point(500, 400), Point(600, 50), size, settings)
    assert result.source == DetectionSource.REJECTED
    assert not result.accepted

    result = fuse_candidates(lost, Point(150, 100), Point(400, 400), size, settings)
    assert result.position == Point(150, 100)
    assert result.source == DetectionSource.COLOR

    # Detectors 40 px apart agree while tracking but not while lost
    result = fuse_candidates(lost, Point(100, 100), Point(140, 100), size, settings)
    assert result.source == DetectionSource.COLOR

    tracking = lost.with_changes(status=TrackStatus.TRACKING)
    result = fuse_candidates(tracking, Point(500, 400), Point(600, 50), size, settings)
    assert result.position == Point(500, 400)

    assert fuse_candidates(lost, None, Point(500, 400), size, settings).source == DetectionSource.REJECTED
    assert fuse_candidates(tracking, None, Point(500, 400), size, settings).source == DetectionSource.SHAPE
    assert fuse_candidates(tracking, None, None, size, settings).source == DetectionSource.NONE


def test_track_state_machine():
    banner("TEST E2: Track state machine")
    settings = TrackerSettings()
    miss = DetectionResult(None, DetectionSource.NONE)

    track = advance_track(TrackState(), DetectionResult(Point(10, 10), DetectionSource.COLOR), 5.0, settings).state
    assert track.status == TrackStatus.TRACKING
    assert track.last_seen == 5.0
    assert track.last_shape_center is None

    emitted = []
    clears = []
    for i in range(12):
        transition = advance_track(track, miss, 6.0 + i, settings)
        track = transition.state
        emitted.append(transition.emit_lost)
        clears.append(transition.clear_trail)

    assert emitted == [False, False, True] + [False] * 9
    assert clears == [False] * 10 + [True, True]
    assert track.is_lost
    assert track.lost_since == 5.0
    assert track.consecutive_misses == 12

    transition = advance_track(track, DetectionResult(Point(20, 20), DetectionSource.SHAPE), 20.0, settings)
    track = transition.state
    assert transition.reacquired
    assert track.status == TrackStatus.TRACKING
    assert track.consecutive_misses == 0
    assert track.lost_since is None
    assert track.last_shape_center == Point(20, 20)


def test_fusion_end_to_end():
    banner("TEST E3: Fusion end to end")
    marker = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)
    blank = make_frame()

    fusion = DetectionFusion(TrackerSettings(), clock=lambda: 0.0)
    assert fusion.process_frame(marker).status == FrameStatus.UNCALIBRATED

    profile = fusion.calibrate(marker, (319, 239))
    assert profile.has_shape
    assert profile.reference_shape.shape_type == ShapeType.RECTANGLE

    result = fusion.process_frame(marker, now=0.0)
    assert result.is_found
    assert result.source == DetectionSource.COLOR_AND_SHAPE
    assert result.frame_size == (640, 480)
    assert result.position.distance_to((319.5, 239.5)) < 2.0
    first = result.position

    result = fusion.process_frame(marker, now=0.05)
    assert result.is_found and result.position == first

    statuses = [fusion.process_frame(blank, now=0.1 + 0.05 * i).status for i in range(4)]
    print(f"  Blank frames: {[s.value for s in statuses]}")
    assert statuses == [FrameStatus.NONE, FrameStatus.NONE, FrameStatus.LOST, FrameStatus.NONE]
    assert fusion.track_state.is_lost
    assert fusion.track_state.lost_since == 0.05

    result = fusion.process_frame(marker, now=0.5)
    assert result.is_found
    assert fusion.track_state.consecutive_misses == 0
    assert fusion.track_state.lost_since is None
    assert fusion.threshold_state.tier == ThresholdTier.NORMAL

    # Invalid frames count as misses, never raise
    assert fusion.process_frame(None, now=0.6).status == FrameStatus.NONE


def test_fusion_rejects_far_jump_while_lost():
    banner("TEST E4: Far jump rejected while lost")
    marker = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)
    far = draw_block(make_frame(), 40, 40, 40, BLUE_RGB)
    blank = make_frame()

    fusion = DetectionFusion(TrackerSettings())
    fusion.calibrate(marker, (319, 239))
    assert fusion.process_frame(marker, now=0.0).is_found
    for i in range(3):
        fusion.process_frame(blank, now=0.1 * (i + 1))
    assert fusion.track_state.is_lost

    fusion.set_detection_mode("color")
    assert fusion.detection_mode == DetectionMode.COLOR
    result = fusion.process_frame(far, now=0.4)
    print(f"  Far jump while lost: status={result.status.value}, source={result.source.value}")
    assert result.status == FrameStatus.NONE
    assert result.source == DetectionSource.REJECTED
    assert fusion.track_state.is_lost

    result = fusion.process_frame(marker, now=0.5)
    assert result.is_found and result.source == DetectionSource.COLOR
    assert abs(result.score - 1.0) < 1e-9


def test_fusion_trail_and_resets():
    banner("TEST E5: Trail and resets")
    marker = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)
    blank = make_frame()

    fusion = DetectionFusion(TrackerSettings())
    fusion.calibrate(marker, (319, 239))
    fusion.set_drawing_status(True)
    result = fusion.process_frame(marker, now=0.0)
    assert len(result.trail) == 1 and result.drawing

    for i in range(10):
        result = fusion.process_frame(blank, now=0.1 * (i + 1))
    assert len(result.trail) == 1
    result = fusion.process_frame(blank, now=1.1)
    assert result.trail == ()

    fusion.reset_lost_status()
    assert not fusion.track_state.is_lost
    assert fusion.track_state.consecutive_misses == 0

    fusion.process_frame(marker, now=1.2)
    fusion.reset_position_history()
    assert fusion.tracker.smoothed_position is None
    assert fusion.track_state.last_shape_center is None

    try:
        fusion.calibrate(marker, (640, 10))
        assert False, "Out-of-bounds calibration should raise"
    except OutOfBoundsError:
        pass
    try:
        fusion.calibrate(None, (10, 10))
        assert False, "Calibration without a frame should raise"
    except CalibrationError:
        pass


def _lose_marker(fusion, marker, blank):
    """Track for one frame at t=0, then stay lost until t=3.2."""
    assert fusion.process_frame(marker, now=0.0).is_found
    for now in (0.5, 1.0, 1.5, 3.0, 3.1, 3.2):
        fusion.process_frame(blank, now=now)
    assert fusion.track_state.is_lost


def test_fusion_widens_color_range_while_lost():
    banner("TEST E6: Color range widening while lost")
    marker = draw_block(make_frame(), 300, 220, 40, BLUE_RGB)        # OpenCV hue 115
    drifted = draw_block(make_frame(), 300, 220, 40, DRIFTED_BLUE_RGB)  # OpenCV hue 132
    blank = make_frame()

    fixed = DetectionFusion(TrackerSettings(detection_mode=DetectionMode.SHAPE))
    fixed.calibrate(marker, (319, 239))
    _lose_marker(fixed, marker, blank)
    result = fixed.process_frame(drifted, now=3.3)
    print(f"  Fixed ranges: drifted marker -> {result.status.value}")
    assert result.status == FrameStatus.NONE

    settings = TrackerSettings(
        detection_mode=DetectionMode.SHAPE,
        adaptive=AdaptiveConfig(adaptive_color_range=True),
    )
    fusion = DetectionFusion(settings)
    fusion.calibrate(marker, (319, 239))
    assert fusion.process_frame(drifted, now=0.0).status == FrameStatus.NONE

    _lose_marker(fusion, marker, blank)
    assert fusion.threshold_state.hue_expansion == 3.0
    result = fusion.process_frame(drifted, now=3.3)
    print(f"  Widened ranges: drifted marker -> {result.status.value}")
    assert result.is_found
    assert result.source == DetectionSource.SHAPE
    assert result.position.distance_to((319.5, 239.5)) < 2.0
    assert fusion.threshold_state.hue_expansion == 0.0


def test_fusion_smoothing_and_sampling_controls():
    banner("TEST E7: Smoothing and sampling controls")
    fusion = DetectionFusion(TrackerSettings())
    fusion.calibrate(draw_block(make_frame(), 300, 220, 40, BLUE_RGB), (319, 239))

    fusion.set_sampling_step(0)
    assert fusion.settings.sampling_step == 1
    fusion.set_sampling_step(4)
    assert fusion.settings.sampling_step == 4
    result = fusion.process_frame(draw_block(make_frame(), 300, 220, 40, BLUE_RGB), now=0.0)
    assert result.is_found

    fusion.configure_smoothing(False, 0.7, 2.0)
    assert not fusion.settings.smoothing_enabled
    assert fusion.tracker.smoothed_position is None

    # Smoothing off: each accepted position is reported as detected
    for i, x in enumerate((330, 360)):
        moved = draw_block(make_frame(), x, 220, 40, BLUE_RGB)
        result = fusion.process_frame(moved, now=0.1 * (i + 1))
        assert result.is_found
        print(f"  Frame {i}: block x={x}, position=({result.position.x:.1f}, {result.position.y:.1f})")
        assert result.position.distance_to((x + 19.5, 239.5)) < 0.01

    fusion.configure_smoothing(True, 1.7, -3.0)
    assert fusion.settings.smoothing_strength == 1.0
    assert fusion.settings.min_move_threshold == 0.0
    assert fusion.tracker.smoothing_enabled and fusion.tracker.smoothing_strength == 1.0


# ----------------------------------------------------------------------
# F. Position tracker
# ----------------------------------------------------------------------

def test_tracker_first_position_and_convergence():
    banner("TEST F1: First position and convergence")
    tracker = PositionTracker(smoothing_strength=0.7, min_distance_threshold=2.0)
    assert tracker.update((0, 0)) == Point(0.0, 0.0)

    distances = []
    for _ in range(15):
        position = tracker.update((100, 0))
        distances.append(position.distance_to((100, 0)))
    assert all(b <= a for a, b in zip(distances, distances[1:]))
    assert abs(distances[0] - 70.0) < 1e-9
    assert distances[-1] <= 2.0


def test_tracker_jitter_suppression():
    banner("TEST F2: Jitter suppression")
    tracker = PositionTracker(min_distance_threshold=2.0)
    tracker.update((50, 50))
    for raw in [(50.5, 50), (49.5, 50.5), (50, 49.2), (51, 51)]:
        assert tracker.update(raw) == Point(50.0, 50.0)
    assert len(tracker.trail) == 1


def test_tracker_trail_bound():
    banner("TEST F3: Trail bound")
    tracker = PositionTracker(smoothing_enabled=False)
    for i in range(25):
        tracker.update((i * 10, 0))
    trail = tracker.trail
    assert len(trail) == 20
    assert trail[0] == Point(50.0, 0.0)
    assert trail[-1] == Point(240.0, 0.0)

    for _ in range(3):
        assert tracker.update(None) is None
    assert tracker.is_lost
    tracker.reset_lost_status()
    assert not tracker.is_lost and len(tracker.trail) == 20

    tracker.reset()
    assert tracker.trail == () and tracker.smoothed_position is None
    assert tracker.update((5, 5)) == Point(5.0, 5.0)


# ----------------------------------------------------------------------
# G. Pipeline, configuration, logging
# ----------------------------------------------------------------------

def test_frame_queue_drops_oldest():
    banner("TEST G1: Frame queue")
    queue = FrameQueue(maxsize=2)
    frame = make_frame(8, 8)
    assert queue.put(FramePacket(frame, 0.0, 1))
    assert queue.put(FramePacket(frame, 0.1, 2))
    assert not queue.put(FramePacket(frame, 0.2, 3))
    assert len(queue) == 2 and queue.dropped == 1

    assert queue.get(timeout=0.01).frame_number == 2
    assert queue.get(timeout=0.01).frame_number == 3
    assert queue.get(timeout=0.01) is None

    queue.close()
    assert queue.closed and queue.get() is None


def test_frame_source_policies():
    banner("TEST G2: Frame source policies")
    source = ThreadedFrameSource(FrameQueue(), mirror=True, skip_frames=True)
    frame = make_frame(4, 2, color=(0, 0, 0))
    frame[:, 0] = (255, 255, 255)

    prepared = source.prepare(frame)
    assert prepared is not None
    assert prepared[0, 3].tolist() == [255, 255, 255]
    assert prepared[0, 0].tolist() == [0, 0, 0]
    assert source.prepare(frame) is None
    assert source.metadata.skipped_frames == 1


def test_marker_pipeline():
    banner("TEST G3: Marker pipeline")
    queue = FrameQueue()
    received = []
    pipeline = MarkerPipeline(DetectionFusion(), queue, consumer=lambda p, r: received.append((p, r)))

    assert pipeline.process_next(timeout=0.01) is None
    queue.put(FramePacket(make_frame(), 1.0, 1))
    result = pipeline.process_next(timeout=0.01)
    assert result.status == FrameStatus.UNCALIBRATED
    assert pipeline.processed == 1
    assert received[0][0].frame_number == 1


def test_marker_pipeline_survives_consumer_errors():
    banner("TEST G4: Pipeline survives consumer errors")
    queue = FrameQueue(maxsize=4)
    received = []

    def consumer(packet, result):
        if packet.frame_number == 1:
            raise RuntimeError("consumer failed")
        received.append(packet.frame_number)

    pipeline = MarkerPipeline(DetectionFusion(), queue, consumer=consumer, poll_timeout=0.01)
    pipeline.start()
    try:
        queue.put(FramePacket(make_frame(), 1.0, 1))
        queue.put(FramePacket(make_frame(), 1.1, 2))

        deadline = time.perf_counter() + 2.0
        while not received and time.perf_counter() < deadline:
            time.sleep(0.01)
        print(f"  processed={pipeline.processed}, errors={pipeline.errors}, received={received}")

        assert received == [2]
        assert pipeline.processed == 2
        assert pipeline.errors == 1
        assert pipeline.is_running

        # Closing the drained queue ends the loop and clears the running flag
        queue.close()
        pipeline._thread.join(timeout=1.0)
        assert not pipeline._thread.is_alive()
        assert not pipeline.is_running
    finally:
        pipeline.stop()


def test_settings_from_env():
    banner("TEST G5: Settings from env")
    keys = {
        "AIRDRAW_SAMPLING_STEP": "0",
        "AIRDRAW_SMOOTHING_STRENGTH": "1.5",
        "AIRDRAW_SMOOTHING_ENABLED": "false",
        "AIRDRAW_DETECTION_MODE": "shape",
        "AIRDRAW_ADAPTIVE": "no",
        "AIRDRAW_MIN_MOVE_THRESHOLD": "not-a-number",
    }
    saved = {key: os.environ.get(key) for key in keys}
    try:
        os.environ.update(keys)
        settings = TrackerSettings.from_env(load_dotenv_file=False)
        assert settings.sampling_step == 1
        assert settings.smoothing_strength == 1.0
        assert settings.smoothing_enabled is False
        assert settings.detection_mode == DetectionMode.SHAPE
        assert not settings.adaptive_detection_enabled
        assert settings.min_move_threshold == 2.0

        settings = TrackerSettings.from_env(load_dotenv_file=False, detection_mode=DetectionMode.COLOR)
        assert settings.detection_mode == DetectionMode.COLOR
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    assert DetectionMode.parse("Color") == DetectionMode.COLOR
    assert DetectionMode.parse("anything") == DetectionMode.COMBINED
    assert DetectionMode.parse(None) == DetectionMode.COMBINED
    assert DetectionMode.COMBINED.uses_color and DetectionMode.COMBINED.uses_shape
    assert not DetectionMode.SHAPE.uses_color


def test_rate_limited_log():
    banner("TEST G6: Rate limited log")
    now = [0.0]
    diag = RateLimitedLog(logging.getLogger("airdraw.test"), interval=10.0, clock=lambda: now[0])

    assert diag.should_emit("pixels")
    assert not diag.should_emit("pixels")
    assert diag.should_emit("error")
    now[0] = 9.9
    assert not diag.should_emit("pixels")
    now[0] = 10.1
    assert diag.should_emit("pixels")

    diag.reset()
    assert diag.should_emit("pixels")


TESTS = [
    ("A1: Color space", test_colorspace),
    ("A2: Color calibration", test_color_calibration),
    ("A3: Color find marker", test_color_find_marker),
    ("A4: Frame validation", test_validate_frame),
    ("B1: Red hue seam mask", test_color_mask_red_wrap),
    ("B2: Plain hue mask", test_color_mask_plain_hue),
    ("C1: Shape classification", test_shape_classification),
    ("C2: Square vs circle", test_square_against_circle_reference),
    ("C3: Shape detector", test_shape_detector),
    ("C4: Shape calibration failure", test_shape_calibration_failure),
    ("C5: Proximity and area window", test_proximity_and_area_window),
    ("D1: Adaptive tiers", test_adaptive_tiers),
    ("D2: Adaptive disabled / color range", test_adaptive_disabled_and_color_range),
    ("E1: Fusion policy", test_fusion_policy),
    ("E2: Track state machine", test_track_state_machine),
    ("E3: Fusion end to end", test_fusion_end_to_end),
    ("E4: Far jump rejected while lost", test_fusion_rejects_far_jump_while_lost),
    ("E5: Trail and resets", test_fusion_trail_and_resets),
    ("E6: Color range widening while lost", test_fusion_widens_color_range_while_lost),
    ("E7: Smoothing and sampling controls", test_fusion_smoothing_and_sampling_controls),
    ("F1: First position and convergence", test_tracker_first_position_and_convergence),
    ("F2: Jitter suppression", test_tracker_jitter_suppression),
    ("F3: Trail bound", test_tracker_trail_bound),
    ("G1: Frame queue", test_frame_queue_drops_oldest),
    ("G2: Frame source policies", test_frame_source_policies),
    ("G3: Marker pipeline", test_marker_pipeline),
    ("G4: Pipeline survives consumer errors", test_marker_pipeline_survives_consumer_errors),
    ("G5: Settings from env", test_settings_from_env),
    ("G6: Rate limited log", test_rate_limited_log),
]


def main():
    """Run all tests and print a summary."""
    logging.basicConfig(level=logging.WARNING)

    print("\n" + "="*60)
    print("AirDraw Marker Tracking Engine - Unit Tests")
    print("="*60)

    results = []
    for name, test in TESTS:
        try:
            test()
            print(f"  ✓ {name}")
            results.append((name, True))
        except AssertionError as e:
            print(f"  ✗ {name} FAILED: {e}")
            results.append((name, False))
        except Exception as e:
            print(f"  ✗ {name} ERROR: {e}")
            import traceback
            traceback.print_exc()
            results.append((name, False))

    passed = sum(1 for _, ok in results if ok)
    print("\n" + ("="*60))
    if passed == len(results):
        print(f"✓ ALL {passed} TESTS PASSED")
    else:
        print(f"✗ {len(results) - passed} OF {len(results)} TESTS FAILED")
    print("="*60 + "\n")

    return 0 if passed == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
