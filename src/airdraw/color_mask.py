"""
AirDraw Color Mask - Binary HSV membership masks for the target color.

Hue is on OpenCV's [0, 180) scale. Reds sit on the wraparound seam, so a
target hue within `hue_range` of 0/180 is matched with two half-ranges
combined by logical OR.
"""

from dataclasses import dataclass, replace
from typing import Optional, Tuple

import cv2
import numpy as np

from .colorspace import OPENCV_HUE_MAX, RGB, rgb_to_opencv_hsv


@dataclass(frozen=True)
class HsvRange:
    """Tolerances around the target HSV color."""
    hue_range: int = 15
    sat_range: int = 50
    val_range: int = 50
    floor: int = 30  # lower bound on saturation and value

    def expanded(self, hue: float = 0.0, sat: float = 0.0, val: float = 0.0) -> "HsvRange":
        return replace(
            self,
            hue_range=int(round(self.hue_range + hue)),
            sat_range=int(round(self.sat_range + sat)),
            val_range=int(round(self.val_range + val)),
        )


class ColorMaskGenerator:
    """Builds binary masks of pixels close to a target color in HSV space."""

    def __init__(self, ranges: Optional[HsvRange] = None):
        self.ranges = ranges or HsvRange()

    def bounds(self, target_color: RGB, ranges: Optional[HsvRange] = None) -> Tuple[int, int, int]:
        """Return (hue, sat_low, val_low) for the target under `ranges`."""
        ranges = ranges or self.ranges
        h, s, v = rgb_to_opencv_hsv(*target_color)
        sat_low = max(s - ranges.sat_range, ranges.floor)
        val_low = max(v - ranges.val_range, ranges.floor)
        return h, sat_low, val_low

    def wraps(self, hue: int, ranges: Optional[HsvRange] = None) -> bool:
        """True when the hue band crosses the 0/180 seam."""
        hue_range = (ranges or self.ranges).hue_range
        return hue < hue_range or hue > OPENCV_HUE_MAX - hue_range

    def create_color_mask(
        self,
        hsv_frame: np.ndarray,
        target_color: RGB,
        ranges: Optional[HsvRange] = None,
    ) -> np.ndarray:
        """
        Threshold an HSV frame around the target color.

        Args:
            hsv_frame: Frame converted with cv2.COLOR_BGR2HSV
            target_color: RGB target
            ranges: Tolerances (defaults to the generator's)

        Returns:
            uint8 mask, 255 where the pixel matches.
        """
        ranges = ranges or self.ranges
        h, sat_low, val_low = self.bounds(target_color, ranges)
        hue_range = ranges.hue_range

        if not self.wraps(h, ranges):
            lower = np.array([max(h - hue_range, 0), sat_low, val_low], dtype=np.uint8)
            upper = np.array([min(h + hue_range, OPENCV_HUE_MAX), 255, 255], dtype=np.uint8)
            return cv2.inRange(hsv_frame, lower, upper)

        if h > OPENCV_HUE_MAX - hue_range:
            near = (h - hue_range, OPENCV_HUE_MAX)
            far = (0, hue_range)
        else:
            near = (0, h + hue_range)
            far = (OPENCV_HUE_MAX - hue_range, OPENCV_HUE_MAX)

        mask_near = cv2.inRange(
            hsv_frame,
            np.array([near[0], sat_low, val_low], dtype=np.uint8),
            np.array([near[1], 255, 255], dtype=np.uint8),
        )
        mask_far = cv2.inRange(
            hsv_frame,
            np.array([far[0], sat_low, val_low], dtype=np.uint8),
            np.array([far[1], 255, 255], dtype=np.uint8),
        )
        return cv2.bitwise_or(mask_near, mask_far)
