"""
AirDraw Color Detector - Color-similarity marker localization.

Calibration picks the dominant (quantized) color around a click, preferring a
saturated color when the dominant one looks like washed-out background.
Detection scans the frame at a stride and returns the weighted centroid of
all pixels whose perceptual distance to the target is below the threshold.

Perceptual distance:
    0.5 * |RGB delta| + 30 * hueDiff + 10 * satDiff + 10 * brightDiff
"""

import logging
from collections import Counter
from typing import Optional, Tuple

import cv2
import numpy as np

from .colorspace import (
    RGB,
    bgr_to_rgb,
    hue_distance,
    quantize_color,
    rgb_to_hsb,
    rgb_to_hsb_array,
    saturation_of,
)
from .config import ColorDetectorConfig
from .log_utils import RateLimitedLog
from .models import OutOfBoundsError, Point, validate_frame


class ColorDetector:
    """
    Finds the calibrated marker by color similarity.

    Detection is a pure function of (frame, target color, stride, threshold):
    the detector keeps no per-frame state.
    """

    DEFAULT_THRESHOLD = 50.0

    def __init__(self, config: Optional[ColorDetectorConfig] = None, threshold: float = DEFAULT_THRESHOLD):
        self.config = config or ColorDetectorConfig()
        self.threshold = threshold
        self.logger = logging.getLogger("ColorDetector")
        self._diag = RateLimitedLog(self.logger)

    def calibrate(self, frame: np.ndarray, point: Tuple[int, int]) -> RGB:
        """
        Pick the marker color around `point`.

        Args:
            frame: BGR image
            point: (x, y) click position

        Returns:
            Target color as an RGB triple.

        Raises:
            CalibrationError: frame missing or malformed
            OutOfBoundsError: point outside the frame
        """
        frame = validate_frame(frame)
        height, width = frame.shape[:2]
        x, y = int(point[0]), int(point[1])
        if not (0 <= x < width and 0 <= y < height):
            raise OutOfBoundsError(f"Calibration point ({x}, {y}) outside {width}x{height} frame")

        radius = self.config.sample_radius
        patch = frame[max(0, y - radius):min(height, y + radius + 1),
                      max(0, x - radius):min(width, x + radius + 1)]

        frequency: Counter = Counter()
        for pixel in patch.reshape(-1, 3):
            frequency[quantize_color(*bgr_to_rgb(pixel), step=self.config.quantize_step)] += 1

        dominant, max_frequency = frequency.most_common(1)[0]

        if saturation_of(dominant) < self.config.low_saturation:
            self.logger.debug("Dominant color has low saturation, looking for more saturated colors")
            best_saturation = 0.0
            most_saturated = dominant
            for color, count in frequency.items():
                if count < max_frequency * self.config.alt_frequency_ratio:
                    continue
                saturation = saturation_of(color)
                if saturation > best_saturation:
                    best_saturation = saturation
                    most_saturated = color
            if best_saturation > self.config.low_saturation:
                dominant = most_saturated
                self.logger.debug(f"Using more saturated color: RGB={dominant}")

        self.logger.info(
            f"Calibrated color RGB={dominant} at ({x}, {y}); "
            f"{len(frequency)} unique colors, mode seen {max_frequency} times"
        )
        return dominant

    def color_distance(self, color: RGB, target: RGB) -> float:
        """Perceptual distance between two RGB colors."""
        cfg = self.config
        h1, s1, b1 = rgb_to_hsb(*color)
        h2, s2, b2 = rgb_to_hsb(*target)
        rgb_dist = float(np.sqrt(sum((int(a) - int(b)) ** 2 for a, b in zip(color, target))))
        return (
            cfg.rgb_weight * rgb_dist
            + cfg.hue_weight * float(hue_distance(h1, h2))
            + cfg.sat_weight * abs(s1 - s2)
            + cfg.bright_weight * abs(b1 - b2)
        )

    def distance_map(self, frame: np.ndarray, target: RGB, sampling_step: int = 1) -> np.ndarray:
        """Perceptual distance of every sampled pixel to `target`."""
        cfg = self.config
        sampled = frame[::sampling_step, ::sampling_step]
        rgb = np.ascontiguousarray(sampled[..., ::-1])
        hue, sat, bright = rgb_to_hsb_array(rgb)
        t_hue, t_sat, t_bright = rgb_to_hsb(*target)

        delta = rgb.astype(np.float64) - np.asarray(target, dtype=np.float64)
        rgb_dist = np.sqrt((delta * delta).sum(axis=-1))

        return (
            cfg.rgb_weight * rgb_dist
            + cfg.hue_weight * hue_distance(hue, t_hue)
            + cfg.sat_weight * np.abs(sat - t_sat)
            + cfg.bright_weight * np.abs(bright - t_bright)
        )

    def find_marker(
        self,
        frame: np.ndarray,
        target_color: Optional[RGB],
        sampling_step: int = 1,
        threshold: Optional[float] = None,
    ) -> Optional[Point]:
        """
        Locate the marker as the weighted centroid of in-range pixels.

        Args:
            frame: BGR image
            target_color: Calibrated RGB color (None = uncalibrated)
            sampling_step: Pixel stride, >= 1
            threshold: Current color threshold (None = detector default)

        Returns:
            Centroid in frame coordinates, or None. Never raises.
        """
        return self.find_marker_scored(frame, target_color, sampling_step, threshold)[0]

    def find_marker_scored(
        self,
        frame: np.ndarray,
        target_color: Optional[RGB],
        sampling_step: int = 1,
        threshold: Optional[float] = None,
    ) -> Tuple[Optional[Point], float]:
        """
        Like find_marker, also returning a match score in [0, 1].

        The score is the best pixel's margin under the threshold,
        (threshold - distance) / threshold, so 1.0 is an exact color match.

        Returns:
            (centroid or None, score). Never raises.
        """
        if target_color is None or frame is None:
            return None, 0.0
        step = max(1, int(sampling_step))
        threshold = self.threshold if threshold is None else float(threshold)

        try:
            validate_frame(frame)
            distance = self.distance_map(frame, target_color, step)
        except (ValueError, TypeError, cv2.error) as exc:
            self._diag.debug("error", f"Color detection failed: {exc}")
            return None, 0.0

        in_range = distance < threshold
        count = int(np.count_nonzero(in_range))
        if count == 0 or threshold <= 0:
            return None, 0.0

        rows, cols = np.nonzero(in_range)
        xs = cols.astype(np.float64) * step
        ys = rows.astype(np.float64) * step
        weights = threshold - distance[in_range]
        total_weight = float(weights.sum())

        if total_weight > 0:
            center = Point(float((xs * weights).sum() / total_weight),
                           float((ys * weights).sum() / total_weight))
        else:
            center = Point(float(xs.mean()), float(ys.mean()))

        if count > 20:
            self._diag.debug("pixels", f"Found {count} matching pixels")
        score = float(weights.max()) / threshold
        return center, min(1.0, max(0.0, score))
