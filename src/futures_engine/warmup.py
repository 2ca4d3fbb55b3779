"""
Warmup Gate

Suppresses every decision until enough history has been seen.
Complete when ANY of:
- covered span >= target hours x tolerance (72h x 0.9)
- covered span >= 24h and volume-delta data has arrived
- bar count >= 100
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from .config import WarmupConfig
from .models import Bar


class WarmupGate:
    """Tracks accumulated history. Completion is sticky."""

    def __init__(self, config: WarmupConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self._first_time: Optional[datetime] = None
        self._last_time: Optional[datetime] = None
        self._bar_count = 0
        self._has_delta = False
        self._complete = False

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def bar_count(self) -> int:
        return self._bar_count

    @property
    def span_hours(self) -> float:
        if self._first_time is None or self._last_time is None:
            return 0.0
        return (self._last_time - self._first_time).total_seconds() / 3600

    @property
    def progress(self) -> float:
        """Fraction of the nearest completion criterion, 0..1."""
        cfg = self.config
        fractions = [
            self.span_hours / (cfg.target_hours * cfg.span_tolerance),
            self._bar_count / cfg.min_bars,
        ]
        if self._has_delta:
            fractions.append(self.span_hours / cfg.min_hours_with_data)
        return min(1.0, max(fractions))

    def observe(self, bar: Bar) -> bool:
        """Account for one closed bar. Returns is_complete."""
        if self._complete:
            return True

        if self._first_time is None:
            self._first_time = bar.time
        self._last_time = bar.time
        self._bar_count += 1
        self._has_delta = self._has_delta or bar.has_delta

        cfg = self.config
        span = self.span_hours
        reason = None
        if span >= cfg.target_hours * cfg.span_tolerance:
            reason = f"span {span:.1f}h"
        elif self._has_delta and span >= cfg.min_hours_with_data:
            reason = f"span {span:.1f}h with volume delta"
        elif self._bar_count >= cfg.min_bars:
            reason = f"{self._bar_count} bars"

        if reason is not None:
            self._complete = True
            self.logger.info(f"Warmup complete: {reason}")
        elif self._bar_count % cfg.progress_log_interval == 0:
            self.logger.info(
                f"Warmup {self.progress:.0%}: {self._bar_count} bars, {span:.1f}h"
            )

        return self._complete

    def get_status_summary(self) -> Dict:
        return {
            "complete": self._complete,
            "bars": self._bar_count,
            "span_hours": self.span_hours,
            "has_volume_delta": self._has_delta,
            "progress": self.progress,
        }
