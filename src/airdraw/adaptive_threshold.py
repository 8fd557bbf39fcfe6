"""
AirDraw Adaptive Threshold Controller - Strictness escalation while lost.

Tiers per detector, driven by wall-clock time since the marker was lost:

    NORMAL ──(delay)──► MEDIUM ──(strict delay)──► STRICT
       ▲                                              │
       └──────────── any accepted detection ──────────┘

While lost, thresholds only ever tighten: they ramp from base to medium
across the Medium window, then from medium to strict over the strict ramp.
On reacquisition the tier snaps back to NORMAL but the thresholds relax by
a small fixed step per frame so they do not oscillate at the boundary.

Shape thresholds are acceptance scores (higher = stricter); color
thresholds are distances (lower = stricter).
"""

import time
import logging
from typing import Callable, Optional

from .config import AdaptiveConfig
from .color_mask import HsvRange
from .models import ThresholdState, ThresholdTier


class AdaptiveThresholdController:
    """Computes the next ThresholdState from the current one and lost status."""

    def __init__(
        self,
        config: Optional[AdaptiveConfig] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.config = config or AdaptiveConfig()
        self._clock = clock
        self.logger = logging.getLogger("AdaptiveThreshold")

    def initial_state(self) -> ThresholdState:
        return ThresholdState(
            color_threshold=self.config.base_color_threshold,
            shape_threshold=self.config.base_threshold,
        )

    def tier_for(self, lost_for: float, delay: float) -> ThresholdTier:
        if lost_for < delay:
            return ThresholdTier.NORMAL
        if lost_for < self.config.strict_delay_seconds:
            return ThresholdTier.MEDIUM
        return ThresholdTier.STRICT

    def _ramp(self, lost_for: float, delay: float, base: float, medium: float, strict: float) -> float:
        cfg = self.config
        if lost_for < delay:
            return base
        if lost_for < cfg.strict_delay_seconds:
            window = cfg.strict_delay_seconds - delay
            progress = (lost_for - delay) / window if window > 0 else 1.0
            return base + (medium - base) * progress
        if cfg.strict_ramp_seconds <= 0:
            return strict
        progress = min(1.0, (lost_for - cfg.strict_delay_seconds) / cfg.strict_ramp_seconds)
        return medium + (strict - medium) * progress

    def target_shape_threshold(self, lost_for: float) -> float:
        cfg = self.config
        return self._ramp(lost_for, cfg.shape_delay_seconds,
                          cfg.base_threshold, cfg.medium_threshold, cfg.strict_threshold)

    def target_color_threshold(self, lost_for: float) -> float:
        cfg = self.config
        return self._ramp(lost_for, cfg.color_delay_seconds,
                          cfg.base_color_threshold, cfg.medium_color_threshold, cfg.strict_color_threshold)

    def update(
        self,
        state: ThresholdState,
        is_lost: bool,
        lost_since: Optional[float] = None,
        now: Optional[float] = None,
    ) -> ThresholdState:
        """
        Advance the threshold state by one frame.

        Args:
            state: Current thresholds
            is_lost: Whether the fusion state machine is currently Lost
            lost_since: Timestamp the marker was last seen (defaults to the
                state's own lost_since, then to `now`)
            now: Current time (defaults to the controller clock)
        """
        now = self._clock() if now is None else now
        cfg = self.config

        if is_lost and lost_since is None:
            lost_since = state.lost_since if state.lost_since is not None else now

        if not cfg.enabled:
            return ThresholdState(
                color_threshold=cfg.base_color_threshold,
                shape_threshold=cfg.base_threshold,
                lost_since=lost_since if is_lost else None,
            )

        if not is_lost:
            return self.relax(state)

        lost_for = max(0.0, now - lost_since)

        shape_threshold = max(state.shape_threshold, self.target_shape_threshold(lost_for))
        color_threshold = min(state.color_threshold, self.target_color_threshold(lost_for))
        shape_threshold = min(cfg.strict_threshold, shape_threshold)
        color_threshold = max(cfg.strict_color_threshold, color_threshold)

        color_tier = max(state.color_tier, self.tier_for(lost_for, cfg.color_delay_seconds), key=lambda t: t.value)
        shape_tier = max(state.shape_tier, self.tier_for(lost_for, cfg.shape_delay_seconds), key=lambda t: t.value)

        hue_exp, sat_exp, val_exp = state.hue_expansion, state.sat_expansion, state.val_expansion
        if cfg.adaptive_color_range and lost_for >= cfg.color_range_delay_seconds:
            hue_exp = min(cfg.max_hue_expansion, hue_exp + cfg.color_range_step)
            sat_exp = min(cfg.max_sat_expansion, sat_exp + cfg.color_range_step)
            val_exp = min(cfg.max_val_expansion, val_exp + cfg.color_range_step)

        if shape_tier != state.shape_tier or color_tier != state.color_tier:
            self.logger.info(
                f"Lost for {lost_for:.1f}s: color tier {color_tier.name} "
                f"(threshold {color_threshold:.1f}), shape tier {shape_tier.name} "
                f"(threshold {shape_threshold:.2f})"
            )

        return ThresholdState(
            color_threshold=color_threshold,
            shape_threshold=shape_threshold,
            lost_since=lost_since,
            color_tier=color_tier,
            shape_tier=shape_tier,
            hue_expansion=hue_exp,
            sat_expansion=sat_exp,
            val_expansion=val_exp,
        )

    def relax(self, state: ThresholdState) -> ThresholdState:
        """Reacquired: reset tiers, step thresholds back toward base."""
        cfg = self.config
        shape_threshold = max(cfg.base_threshold, state.shape_threshold - cfg.shape_relax_step)
        color_threshold = min(cfg.base_color_threshold, state.color_threshold + cfg.color_relax_step)
        if state.tier != ThresholdTier.NORMAL:
            self.logger.info("Marker reacquired: strictness back to NORMAL")
        return ThresholdState(
            color_threshold=color_threshold,
            shape_threshold=shape_threshold,
        )

    def strictness(self, state: ThresholdState) -> float:
        """Where the shape threshold sits between base (0.0) and strict (1.0)."""
        span = self.config.strict_threshold - self.config.base_threshold
        if span <= 0:
            return 0.0
        return min(1.0, max(0.0, (state.shape_threshold - self.config.base_threshold) / span))

    def color_ranges(self, state: ThresholdState, base: HsvRange) -> HsvRange:
        """HSV tolerances including any loss-time widening."""
        return base.expanded(state.hue_expansion, state.sat_expansion, state.val_expansion)
