"""
AirDraw Shape Detector - Marker localization by combined color and shape.

Pipeline (both calibration and per-frame detection):
    BGR -> HSV -> color mask -> open(5x5) -> close(5x5) -> external contours

Calibration records the signature of the contour under the click (or the
nearest one within 50 px). Detection scores every contour inside a dynamic
area window against that signature, boosts candidates close to the previous
center, and accepts the best one only above the current threshold.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .colorspace import RGB
from .color_mask import ColorMaskGenerator, HsvRange
from .config import ShapeDetectorConfig
from .log_utils import RateLimitedLog
from .models import OutOfBoundsError, Point, ShapeSignature, validate_frame
from .shape_analyzer import ShapeAnalyzer


@dataclass(frozen=True)
class ShapeCandidate:
    """Best contour of the last frame, kept for diagnostics even if rejected."""
    center: Point
    contour: np.ndarray
    base_score: float
    score: float
    accepted: bool


def contour_center(contour: np.ndarray) -> Optional[Point]:
    """Centroid from image moments, None for degenerate contours."""
    moments = cv2.moments(contour)
    if moments["m00"] < 1e-3:
        return None
    return Point(moments["m10"] / moments["m00"], moments["m01"] / moments["m00"])


def proximity_factor(
    center: Point,
    previous_center: Optional[Point],
    max_tracking_distance: float = 200.0,
    floor: float = 0.4,
    boost: float = 1.3,
) -> float:
    """
    Multiplier favoring candidates near the previously accepted center.

    Returns 1.0 when there is no previous center.
    """
    if previous_center is None:
        return 1.0
    distance = center.distance_to(previous_center)
    return max(floor, 1.0 - distance / max_tracking_distance) * boost


class ShapeDetector:
    """
    Calibrates and locates a marker by color mask plus contour shape.

    The previous center and acceptance threshold are passed in explicitly,
    so find_marker() is a pure function of its inputs and the calibration.
    """

    def __init__(
        self,
        config: Optional[ShapeDetectorConfig] = None,
        mask_generator: Optional[ColorMaskGenerator] = None,
        analyzer: Optional[ShapeAnalyzer] = None,
        threshold: float = 0.5,
    ):
        self.config = config or ShapeDetectorConfig()
        self.mask_generator = mask_generator or ColorMaskGenerator(
            HsvRange(
                hue_range=self.config.hue_range,
                sat_range=self.config.sat_range,
                val_range=self.config.val_range,
                floor=self.config.sat_val_floor,
            )
        )
        self.analyzer = analyzer or ShapeAnalyzer()
        self.threshold = threshold
        self.target_color: Optional[RGB] = None
        self.last_candidate: Optional[ShapeCandidate] = None

        self._kernel = cv2.getStructuringElement(
            cv2.MORPH_ELLIPSE, (self.config.morph_kernel_size, self.config.morph_kernel_size)
        )
        self.logger = logging.getLogger("ShapeDetector")
        self._diag = RateLimitedLog(self.logger)

    @property
    def is_calibrated(self) -> bool:
        return self.target_color is not None and self.analyzer.is_calibrated

    @property
    def reference(self) -> Optional[ShapeSignature]:
        return self.analyzer.reference

    def extract_contours(
        self,
        frame: np.ndarray,
        color: RGB,
        ranges: Optional[HsvRange] = None,
    ) -> List[np.ndarray]:
        """Mask the frame for `color`, denoise it and return external contours."""
        hsv = cv2.cvtColor(frame, cv2.COLOR_BGR2HSV)
        mask = self.mask_generator.create_color_mask(hsv, color, ranges)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, self._kernel, iterations=self.config.open_iterations)
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, self._kernel, iterations=self.config.close_iterations)
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        return list(contours)

    def calibrate(self, frame: np.ndarray, point: Tuple[int, int], color: RGB) -> Optional[ShapeSignature]:
        """
        Record the reference shape of the marker under `point`.

        Fails silently (returns None, detector uncalibrated) when no contour
        contains the point or lies within the fallback distance.

        Raises:
            CalibrationError: frame missing or malformed
            OutOfBoundsError: point outside the frame
        """
        frame = validate_frame(frame)
        height, width = frame.shape[:2]
        x, y = int(point[0]), int(point[1])
        if not (0 <= x < width and 0 <= y < height):
            raise OutOfBoundsError(f"Calibration point ({x}, {y}) outside {width}x{height} frame")

        self.target_color = tuple(int(c) for c in color)
        self.analyzer.reference = None
        self.last_candidate = None

        contours = self.extract_contours(frame, self.target_color)
        target = self._select_calibration_contour(contours, Point(float(x), float(y)))
        if target is None:
            self.logger.warning(f"Failed to find a contour at the calibration point ({x}, {y})")
            return None

        signature = self.analyzer.analyze_reference_shape(target)
        self.logger.info(
            f"Shape calibrated with color RGB={self.target_color}: "
            f"type={signature.shape_type.display_name}, area={signature.area:.1f}, "
            f"vertices={signature.vertex_count}"
        )
        return signature

    def _select_calibration_contour(self, contours: List[np.ndarray], point: Point) -> Optional[np.ndarray]:
        for contour in contours:
            if cv2.pointPolygonTest(contour, (point.x, point.y), False) >= 0:
                return contour

        closest = None
        min_dist = float("inf")
        for contour in contours:
            center = contour_center(contour)
            if center is None:
                continue
            dist = center.distance_to(point)
            if dist < min_dist:
                min_dist = dist
                closest = contour

        if closest is not None and min_dist <= self.config.calibration_max_distance:
            return closest
        return None

    def area_window(self, frame_width: int, frame_height: int, strictness: float = 0.0) -> Tuple[float, float]:
        """
        Acceptable contour area range for a frame.

        The window narrows from the Normal fractions toward the strict ones as
        `strictness` goes from 0 to 1.
        """
        cfg = self.config
        s = min(1.0, max(0.0, strictness))
        frame_area = float(frame_width * frame_height)
        min_frac = cfg.min_area_fraction + (cfg.strict_min_area_fraction - cfg.min_area_fraction) * s
        max_frac = cfg.max_area_fraction + (cfg.strict_max_area_fraction - cfg.max_area_fraction) * s
        return max(cfg.min_area, frame_area * min_frac), min(cfg.max_area, frame_area * max_frac)

    def find_marker(
        self,
        frame: np.ndarray,
        threshold: Optional[float] = None,
        previous_center: Optional[Point] = None,
        strictness: float = 0.0,
        ranges: Optional[HsvRange] = None,
    ) -> Optional[Point]:
        """
        Locate the marker in `frame`.

        Args:
            frame: BGR image
            threshold: Acceptance score (None = detector default)
            previous_center: Last accepted center for the proximity boost
            strictness: 0..1, narrows the area window
            ranges: HSV tolerances (None = mask generator defaults)

        Returns:
            Centroid of the best contour if its score exceeds the threshold,
            else None. Never raises.
        """
        if not self.is_calibrated or frame is None:
            return None
        threshold = self.threshold if threshold is None else float(threshold)

        try:
            validate_frame(frame)
            contours = self.extract_contours(frame, self.target_color, ranges)
            best = self._best_candidate(frame, contours, previous_center, strictness)
        except (cv2.error, ValueError, TypeError, ZeroDivisionError) as exc:
            self._diag.debug("error", f"Error in shape recognition: {exc}")
            self.last_candidate = None
            return None

        if best is None:
            self.last_candidate = None
            return None

        accepted = best.score > threshold
        self.last_candidate = ShapeCandidate(best.center, best.contour, best.base_score, best.score, accepted)
        if accepted:
            return best.center

        self._diag.debug("below", f"Best shape score {best.score:.2f} below threshold {threshold:.2f}")
        return None

    def _best_candidate(
        self,
        frame: np.ndarray,
        contours: List[np.ndarray],
        previous_center: Optional[Point],
        strictness: float,
    ) -> Optional[ShapeCandidate]:
        cfg = self.config
        height, width = frame.shape[:2]
        min_area, max_area = self.area_window(width, height, strictness)

        best: Optional[ShapeCandidate] = None
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < min_area or area > max_area:
                continue
            center = contour_center(contour)
            if center is None:
                continue

            base_score = self.analyzer.calculate_shape_match_score(contour)
            if base_score < cfg.min_base_score:
                continue

            score = base_score * proximity_factor(
                center, previous_center, cfg.max_tracking_distance, cfg.proximity_floor, cfg.proximity_boost
            )
            if best is None or score > best.score:
                best = ShapeCandidate(center, contour, base_score, score, False)

        return best
