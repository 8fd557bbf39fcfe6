"""
AirDraw Color Space - Canonical RGB <-> HSB/HSV math

Every detector goes through this module so that hue semantics are identical
between the color-similarity scan and the HSV mask used for shape detection.

Two hue conventions live here:
- HSB (a.k.a. HSV in [0, 1]): hue, saturation, brightness all normalized to
  [0, 1]. Used for perceptual color distance.
- OpenCV HSV: hue in [0, 180), saturation and value in [0, 255]. Used to
  build cv2.inRange masks.
"""

from typing import Tuple

import numpy as np

RGB = Tuple[int, int, int]

# Below this spread a color is treated as gray (hue undefined -> 0)
GRAY_EPSILON = 1e-4

OPENCV_HUE_MAX = 180


def rgb_to_hsb(r: int, g: int, b: int) -> Tuple[float, float, float]:
    """
    Convert an 8-bit RGB color to HSB.

    Returns:
        (hue, saturation, brightness), each in [0, 1].
    """
    red = r / 255.0
    green = g / 255.0
    blue = b / 255.0

    c_max = max(red, green, blue)
    c_min = min(red, green, blue)
    delta = c_max - c_min
    bright = c_max

    if delta < GRAY_EPSILON:
        return 0.0, 0.0, bright

    saturation = delta / c_max

    if red == c_max:
        hue = (green - blue) / delta
    elif green == c_max:
        hue = 2.0 + (blue - red) / delta
    else:
        hue = 4.0 + (red - green) / delta

    hue *= 60.0
    if hue < 0:
        hue += 360.0

    return hue / 360.0, saturation, bright


def rgb_to_hsb_array(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Vectorized rgb_to_hsb over an (..., 3) array of RGB values.

    Matches the scalar version element-wise, including the gray handling.
    """
    rgb = rgb.astype(np.float64) / 255.0
    red, green, blue = rgb[..., 0], rgb[..., 1], rgb[..., 2]

    c_max = rgb.max(axis=-1)
    c_min = rgb.min(axis=-1)
    delta = c_max - c_min
    chromatic = delta >= GRAY_EPSILON
    safe_delta = np.where(chromatic, delta, 1.0)
    safe_max = np.where(c_max > 0, c_max, 1.0)

    hue = np.where(
        red == c_max,
        (green - blue) / safe_delta,
        np.where(
            green == c_max,
            2.0 + (blue - red) / safe_delta,
            4.0 + (red - green) / safe_delta,
        ),
    )
    hue = hue * 60.0
    hue = np.where(hue < 0, hue + 360.0, hue) / 360.0

    hue = np.where(chromatic, hue, 0.0)
    saturation = np.where(chromatic, delta / safe_max, 0.0)
    return hue, saturation, c_max


def hue_distance(h1, h2):
    """Circular distance between hues in [0, 1]. Works on scalars and arrays."""
    diff = np.abs(h1 - h2)
    return np.minimum(diff, 1.0 - diff)


def rgb_to_opencv_hsv(r: int, g: int, b: int) -> Tuple[int, int, int]:
    """
    Convert an 8-bit RGB color to OpenCV's HSV scale.

    Returns:
        (h, s, v) with h in [0, 180), s and v in [0, 255], truncated to int.
    """
    hue, saturation, bright = rgb_to_hsb(r, g, b)
    h = int(hue * 360.0 / 2.0) % OPENCV_HUE_MAX
    s = int(saturation * 255)
    v = int(bright * 255)
    return h, s, v


def quantize_color(r: int, g: int, b: int, step: int = 5) -> RGB:
    """Round each channel to the nearest multiple of `step` (clamped to 255)."""
    return tuple(min(255, step * int(round(c / step))) for c in (r, g, b))


def bgr_to_rgb(pixel) -> RGB:
    """Reorder a single OpenCV BGR pixel into an RGB tuple of ints."""
    return int(pixel[2]), int(pixel[1]), int(pixel[0])


def saturation_of(color: RGB) -> float:
    return rgb_to_hsb(*color)[1]
