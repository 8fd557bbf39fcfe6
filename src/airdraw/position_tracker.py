"""
AirDraw Position Tracker - Smoothing, jitter suppression and trail history.

    smoothed <- alpha * raw + (1 - alpha) * smoothed,   alpha = 1 - strength

The first position after a reset is taken verbatim. Moves shorter than the
jitter floor return the previous smoothed position unchanged. Every accepted
output is appended to a bounded FIFO trail (oldest evicted first).
"""

import math
import logging
from collections import deque
from typing import Deque, Optional, Tuple

from .models import Point


class PositionTracker:
    """Stabilizes fused marker positions and keeps a short trail."""

    DEFAULT_CAPACITY = 20

    def __init__(
        self,
        smoothing_enabled: bool = True,
        smoothing_strength: float = 0.7,
        min_distance_threshold: float = 2.0,
        capacity: int = DEFAULT_CAPACITY,
        lost_after_misses: int = 3,
    ):
        self.smoothing_enabled = smoothing_enabled
        self.smoothing_strength = min(1.0, max(0.0, smoothing_strength))
        self.min_distance_threshold = max(0.0, min_distance_threshold)
        self.lost_after_misses = lost_after_misses
        self.logger = logging.getLogger("PositionTracker")

        self._trail: Deque[Point] = deque(maxlen=max(1, capacity))
        self._smoothed: Optional[Point] = None
        self._consecutive_misses = 0

    def configure(self, smoothing_enabled: bool, smoothing_strength: float, min_distance_threshold: float):
        """Change smoothing settings; resets the smoothing state."""
        self.smoothing_enabled = smoothing_enabled
        self.smoothing_strength = min(1.0, max(0.0, smoothing_strength))
        self.min_distance_threshold = max(0.0, min_distance_threshold)
        self.reset()

    @property
    def alpha(self) -> float:
        return 1.0 - self.smoothing_strength

    @property
    def smoothed_position(self) -> Optional[Point]:
        return self._smoothed

    @property
    def trail(self) -> Tuple[Point, ...]:
        return tuple(self._trail)

    @property
    def capacity(self) -> int:
        return self._trail.maxlen

    @property
    def consecutive_misses(self) -> int:
        return self._consecutive_misses

    @property
    def is_lost(self) -> bool:
        return self._consecutive_misses >= self.lost_after_misses

    def update(self, candidate: Optional[Tuple[float, float]]) -> Optional[Point]:
        """
        Feed one frame's accepted position (or None for a miss).

        Returns:
            The smoothed position, or None for a miss.
        """
        if candidate is None:
            self._consecutive_misses += 1
            return None

        self._consecutive_misses = 0
        raw = Point(float(candidate[0]), float(candidate[1]))

        if self._smoothed is None:
            self._smoothed = raw
            self._trail.append(raw)
            return raw

        if not self.smoothing_enabled:
            self._smoothed = raw
            self._trail.append(raw)
            return raw

        distance = math.hypot(raw.x - self._smoothed.x, raw.y - self._smoothed.y)
        if distance < self.min_distance_threshold:
            return self._smoothed

        alpha = self.alpha
        self._smoothed = Point(
            alpha * raw.x + (1.0 - alpha) * self._smoothed.x,
            alpha * raw.y + (1.0 - alpha) * self._smoothed.y,
        )
        self._trail.append(self._smoothed)
        return self._smoothed

    def clear_trail(self):
        if self._trail:
            self.logger.debug(f"Clearing trail of {len(self._trail)} points")
        self._trail.clear()

    def reset(self):
        """Forget smoothing state and trail."""
        self._trail.clear()
        self._smoothed = None

    def reset_lost_status(self):
        """Clear loss bookkeeping only; the trail is untouched."""
        self._consecutive_misses = 0
