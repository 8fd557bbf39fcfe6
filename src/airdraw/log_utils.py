"""
AirDraw Logging helpers.

Per-frame code runs at camera rate, so its diagnostics are time-gated:
RateLimitedLog lets each message key through at most once per interval.
"""

import os
import time
import logging
from typing import Callable, Dict, Optional

DEFAULT_INTERVAL = 10.0


def configure_logging(level_name: Optional[str] = None):
    """Configure root logging for entry points (level from AIRDRAW_LOG_LEVEL)."""
    level_name = (level_name or os.environ.get("AIRDRAW_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s.%(msecs)03d | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # OpenCV / dotenv chatter is rarely useful here
    logging.getLogger("dotenv").setLevel(logging.WARNING)
    return level


class RateLimitedLog:
    """
    Wraps a logger so that each key is emitted at most once per interval.

    Usage:
        self._diag = RateLimitedLog(self.logger, interval=10.0)
        self._diag.debug("pixels", f"Found {n} matching pixels")
    """

    def __init__(
        self,
        logger: logging.Logger,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.logger = logger
        self.interval = interval
        self._clock = clock
        self._last_emit: Dict[str, float] = {}

    def should_emit(self, key: str) -> bool:
        now = self._clock()
        last = self._last_emit.get(key)
        if last is not None and now - last < self.interval:
            return False
        self._last_emit[key] = now
        return True

    def log(self, level: int, key: str, message: str) -> bool:
        if not self.logger.isEnabledFor(level):
            return False
        if not self.should_emit(key):
            return False
        self.logger.log(level, message)
        return True

    def debug(self, key: str, message: str) -> bool:
        return self.log(logging.DEBUG, key, message)

    def info(self, key: str, message: str) -> bool:
        return self.log(logging.INFO, key, message)

    def warning(self, key: str, message: str) -> bool:
        return self.log(logging.WARNING, key, message)

    def reset(self):
        self._last_emit.clear()
