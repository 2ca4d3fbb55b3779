"""
Indicator Provider

Default per-bar indicator source for the engine:
- ATR (Wilder smoothing)
- Simple moving average of close (or volume) used to smooth RVOL

Any object exposing update(bar) -> IndicatorValues can replace it.
"""

from typing import List, Optional

import numpy as np

from .config import SignalConfig
from .models import Bar, IndicatorValues


class IndicatorProvider:
    """Rolling ATR and smoothing average, recomputed on each closed bar."""

    def __init__(self, config: SignalConfig):
        self.config = config

        self._highs: List[float] = []
        self._lows: List[float] = []
        self._closes: List[float] = []
        self._volumes: List[float] = []

        self._latest = IndicatorValues()

    @property
    def latest(self) -> IndicatorValues:
        return self._latest

    @property
    def max_history(self) -> int:
        return max(self.config.atr_period, self.config.smoothed_period) * 4 + 1

    def update(self, bar: Bar) -> IndicatorValues:
        """Append a closed bar and return fresh readings."""
        self._highs.append(bar.high)
        self._lows.append(bar.low)
        self._closes.append(bar.close)
        self._volumes.append(bar.volume)

        # Trim history
        max_history = self.max_history
        if len(self._closes) > max_history:
            self._highs = self._highs[-max_history:]
            self._lows = self._lows[-max_history:]
            self._closes = self._closes[-max_history:]
            self._volumes = self._volumes[-max_history:]

        source = self._closes if self.config.smoothed_on_price else self._volumes
        self._latest = IndicatorValues(
            atr=self._calc_atr(
                np.array(self._highs),
                np.array(self._lows),
                np.array(self._closes),
                self.config.atr_period,
            ),
            smoothed=self._calc_sma(np.array(source), self.config.smoothed_period),
        )
        return self._latest

    @staticmethod
    def _calc_sma(data: np.ndarray, period: int) -> Optional[float]:
        if len(data) < period:
            return None
        return float(np.mean(data[-period:]))

    @staticmethod
    def _calc_atr(
        highs: np.ndarray,
        lows: np.ndarray,
        closes: np.ndarray,
        period: int,
    ) -> Optional[float]:
        """Calculate current ATR value."""
        if len(closes) < period + 1:
            return None

        # True Range
        prev_close = closes[:-1]
        tr = np.empty(len(closes))
        tr[0] = highs[0] - lows[0]
        tr[1:] = np.maximum.reduce([
            highs[1:] - lows[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close),
        ])

        # Wilder's smoothing
        atr = float(np.mean(tr[:period]))
        for value in tr[period:]:
            atr = (atr * (period - 1) + value) / period

        return atr

    def reset(self) -> None:
        self._highs.clear()
        self._lows.clear()
        self._closes.clear()
        self._volumes.clear()
        self._latest = IndicatorValues()
