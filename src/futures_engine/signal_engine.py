"""
Signal Engine - Volume / Volume-Delta Signal Aggregation

Six independent calculators read each closed bar against a trailing
window of PRIOR bars (no look-ahead). A voting layer turns their
long/short readings into four cached decisions per bar close:

- entry long:  >= entry_required entry-enabled calculators report long
- entry short: >= entry_required entry-enabled calculators report short
- exit long:   >= exit_required exit-enabled calculators report SHORT
- exit short:  >= exit_required exit-enabled calculators report LONG

CONTRADICTION RULE:
If entry long and entry short are both true on the same bar, both are
discarded for that bar.

CALCULATORS:
- RVOL:            volume vs short/long average, smoothed, ATR-normalized
- VD Strength:     |delta| vs average |delta|
- VD Price Ratio:  price move per unit of delta vs window ratio
- Custom HMA:      close vs Hull MA whose period is base / ATR
- VD Volume Ratio: |delta| / volume vs window ratio
- VD Divergence:   delta against the direction of the bar
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import SignalConfig
from .models import Bar, IndicatorValues


class CalculatorKind(Enum):
    """Closed set of signal calculators."""
    RVOL = "rvol"
    VD_STRENGTH = "vd_strength"
    VD_PRICE_RATIO = "vd_price_ratio"
    CUSTOM_HMA = "custom_hma"
    VD_VOLUME_RATIO = "vd_volume_ratio"
    VD_DIVERGENCE = "vd_divergence"


@dataclass(frozen=True)
class CalculatorReading:
    """One calculator's output for one bar."""
    kind: CalculatorKind
    is_long: bool
    is_short: bool
    value: float

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "is_long": self.is_long,
            "is_short": self.is_short,
            "value": self.value,
        }


def _average(values: Sequence[float], use_median: bool) -> float:
    if len(values) == 0:
        return 0.0
    if use_median:
        return float(np.median(values))
    return float(np.mean(values))


def _wma(values: np.ndarray) -> float:
    """Linearly weighted average, newest value weighted highest."""
    weights = np.arange(1, len(values) + 1, dtype=float)
    return float(np.dot(values, weights) / weights.sum())


def hull_moving_average(closes: Sequence[float], period: int) -> Optional[float]:
    """
    Hull MA of the last value in closes.

    HMA(n) = WMA(2 * WMA(n/2) - WMA(n), sqrt(n))
    Returns None when there are fewer than n + sqrt(n) - 1 values.
    """
    half = max(period // 2, 1)
    root = max(int(np.sqrt(period)), 1)
    needed = period + root - 1
    if len(closes) < needed:
        return None

    data = np.asarray(closes[-needed:], dtype=float)
    raw = np.array([
        2.0 * _wma(data[end - half:end]) - _wma(data[end - period:end])
        for end in range(period, needed + 1)
    ])
    return _wma(raw)


class SignalCalculator(ABC):
    """Base class for signal calculators."""

    kind: CalculatorKind

    def __init__(self):
        self.is_long = False
        self.is_short = False
        self.value = 0.0

    @abstractmethod
    def update(
        self,
        bar: Bar,
        history: Sequence[Bar],
        indicators: IndicatorValues,
    ) -> None:
        """Recompute from the closed bar and the PRIOR bars in history."""
        pass

    def _clear(self) -> None:
        self.is_long = False
        self.is_short = False

    def reading(self) -> CalculatorReading:
        return CalculatorReading(
            kind=self.kind,
            is_long=self.is_long,
            is_short=self.is_short,
            value=float(self.value),
        )


class RvolCalculator(SignalCalculator):
    """
    Relative volume.

    rvol_short/long = volume / average volume over the window
    smoothed = (rvol_short + rvol_long + smoothing MA) / 3
    normalized = smoothed / ATR

    Fires when normalized moves more than threshold from the previous
    reading; long when rising, short when falling.
    """

    kind = CalculatorKind.RVOL

    def __init__(self, short_window: int, long_window: int, threshold: float, use_median: bool):
        super().__init__()
        self.short_window = short_window
        self.long_window = long_window
        self.threshold = threshold
        self.use_median = use_median

        self.rvol_short = 0.0
        self.rvol_long = 0.0
        self.previous: Optional[float] = None

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        if not history or indicators.atr is None or indicators.smoothed is None:
            return

        volumes = [b.volume for b in history]
        avg_short = _average(volumes[-self.short_window:], self.use_median)
        avg_long = _average(volumes[-self.long_window:], self.use_median)

        self.rvol_short = bar.volume / avg_short if avg_short > 0 else 0.0
        self.rvol_long = bar.volume / avg_long if avg_long > 0 else 0.0

        smoothed = (self.rvol_short + self.rvol_long + indicators.smoothed) / 3.0
        normalized = smoothed / indicators.atr if indicators.atr > 0 else smoothed

        previous = self.previous
        self.previous = normalized
        self.value = normalized

        if previous is None:
            return
        if normalized == 0 and previous == 0:
            return

        if abs(normalized - previous) > self.threshold:
            self.is_long = normalized > previous
            self.is_short = normalized < previous


class _DeltaWindowCalculator(SignalCalculator):
    """Shared window handling for the volume-delta calculators."""

    def __init__(self, lookback: int, threshold: float, use_median: bool):
        super().__init__()
        self.lookback = lookback
        self.threshold = threshold
        self.use_median = use_median
        self.average = 0.0

    def _window(self, history: Sequence[Bar]) -> List[Bar]:
        return [b for b in history[-self.lookback:] if b.has_delta]

    def _apply_threshold(self, current: float, delta: float) -> None:
        # Average of zero means the window carries no information
        if self.average <= 0:
            return
        if current > self.average * self.threshold:
            self.is_long = delta > 0
            self.is_short = delta < 0


class VdStrengthCalculator(_DeltaWindowCalculator):
    """|delta| of the bar vs average |delta| over the window."""

    kind = CalculatorKind.VD_STRENGTH

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        delta = bar.delta
        window = self._window(history)
        if delta is None or not window:
            return

        self.value = delta
        self.average = _average([abs(b.delta) for b in window], self.use_median)
        self._apply_threshold(abs(delta), delta)


class VdPriceRatioCalculator(_DeltaWindowCalculator):
    """|open - close| / |delta| of the bar vs the window ratio."""

    kind = CalculatorKind.VD_PRICE_RATIO

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        delta = bar.delta
        window = self._window(history)
        if delta is None or not window:
            return

        ratio = bar.price_move / abs(delta) if delta != 0 else 0.0
        self.value = ratio

        if self.use_median:
            ratios = [b.price_move / abs(b.delta) for b in window if b.delta != 0]
            self.average = _average(ratios, True)
        else:
            total_delta = sum(abs(b.delta) for b in window)
            total_move = sum(b.price_move for b in window)
            self.average = total_move / total_delta if total_delta > 0 else 0.0

        self._apply_threshold(ratio, delta)


class VdVolumeRatioCalculator(_DeltaWindowCalculator):
    """|delta| / volume of the bar vs the window ratio."""

    kind = CalculatorKind.VD_VOLUME_RATIO

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        delta = bar.delta
        window = self._window(history)
        if delta is None or not window:
            return

        ratio = abs(delta) / bar.volume if bar.volume > 0 else 0.0
        self.value = ratio

        if self.use_median:
            ratios = [abs(b.delta) / b.volume for b in window if b.volume > 0]
            self.average = _average(ratios, True)
        else:
            total_volume = sum(b.volume for b in window)
            total_delta = sum(abs(b.delta) for b in window)
            self.average = total_delta / total_volume if total_volume > 0 else 0.0

        self._apply_threshold(ratio, delta)


class CustomHmaCalculator(SignalCalculator):
    """
    Adaptive Hull MA.

    Period = base_period / ATR clamped to [2, 100], so the average
    shortens as volatility rises. Long above, short below.
    """

    kind = CalculatorKind.CUSTOM_HMA

    MIN_PERIOD = 2
    MAX_PERIOD = 100

    def __init__(self, base_period: int):
        super().__init__()
        self.base_period = base_period
        self.period = base_period

    @property
    def max_history(self) -> int:
        return self.MAX_PERIOD + int(np.sqrt(self.MAX_PERIOD))

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        self.value = bar.close
        atr = indicators.atr
        if atr is None:
            return

        period = int(self.base_period / atr) if atr > 0 else self.base_period
        self.period = min(max(period, self.MIN_PERIOD), self.MAX_PERIOD)

        closes = [b.close for b in history] + [bar.close]
        hma = hull_moving_average(closes, self.period)
        if hma is None:
            return

        self.value = hma
        self.is_long = bar.close > hma
        self.is_short = bar.close < hma


class VdDivergenceCalculator(SignalCalculator):
    """
    Delta against the bar.

    Long: price did not rise but delta is positive (absorbed buying).
    Short: price rose but delta is negative.
    """

    kind = CalculatorKind.VD_DIVERGENCE

    def update(self, bar: Bar, history: Sequence[Bar], indicators: IndicatorValues) -> None:
        self._clear()
        delta = bar.delta
        if delta is None:
            self.value = 0.0
            return

        self.value = delta
        move = bar.close - bar.open
        self.is_long = move <= 0 and delta > 0
        self.is_short = move > 0 and delta < 0


def build_calculators(config: SignalConfig) -> Dict[CalculatorKind, SignalCalculator]:
    """All six calculators, keyed by kind."""
    calculators: List[SignalCalculator] = [
        RvolCalculator(
            config.rvol_short_window,
            config.rvol_long_window,
            config.rvol_threshold,
            config.use_median,
        ),
        VdStrengthCalculator(
            config.vd_lookback_window,
            config.vd_strength_threshold,
            config.use_median,
        ),
        VdPriceRatioCalculator(
            config.vd_lookback_window,
            config.vd_price_ratio_threshold,
            config.use_median,
        ),
        CustomHmaCalculator(config.custom_hma_base_period),
        VdVolumeRatioCalculator(
            config.vd_lookback_window,
            config.vd_volume_ratio_threshold,
            config.use_median,
        ),
        VdDivergenceCalculator(),
    ]
    return {calc.kind: calc for calc in calculators}


@dataclass(frozen=True)
class CachedSignals:
    """Decisions frozen at bar close."""
    time: Optional[datetime] = None
    entry_long: bool = False
    entry_short: bool = False
    exit_long: bool = False
    exit_short: bool = False
    contradiction: bool = False

    def to_dict(self) -> dict:
        return {
            "time": self.time.isoformat() if self.time else None,
            "entry_long": self.entry_long,
            "entry_short": self.entry_short,
            "exit_long": self.exit_long,
            "exit_short": self.exit_short,
            "contradiction": self.contradiction,
        }


@dataclass(frozen=True)
class SignalSnapshot:
    """
    Immutable per-bar record of every calculator reading.

    Captured exactly once per bar close.
    """
    timestamp: datetime
    close: float
    price_move: float
    volume_delta: Optional[float]
    atr: Optional[float]
    readings: Tuple[CalculatorReading, ...]
    signals: CachedSignals

    def reading(self, kind: CalculatorKind) -> Optional[CalculatorReading]:
        for reading in self.readings:
            if reading.kind is kind:
                return reading
        return None

    def value(self, kind: CalculatorKind) -> float:
        reading = self.reading(kind)
        return reading.value if reading else 0.0

    def to_dict(self) -> dict:
        result = {
            "timestamp": self.timestamp.isoformat(),
            "close": self.close,
            "price_move": self.price_move,
            "volume_delta": self.volume_delta,
            "atr": self.atr,
        }
        for reading in self.readings:
            name = reading.kind.value
            result[f"{name}_long"] = reading.is_long
            result[f"{name}_short"] = reading.is_short
            result[f"{name}_value"] = reading.value
        result.update(self.signals.to_dict())
        return result


class SignalAggregator:
    """
    Runs all calculators per closed bar and votes at bar close.

    cache_at_close() is idempotent per timestamp: a call with a time
    not strictly after the last cached time changes nothing.
    """

    def __init__(self, config: SignalConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self.calculators = build_calculators(config)
        self.entry_kinds: Tuple[CalculatorKind, ...] = tuple(
            CalculatorKind(name) for name in config.entry_signals
        )
        self.exit_kinds: Tuple[CalculatorKind, ...] = tuple(
            CalculatorKind(name) for name in config.exit_signals
        )

        # Prior closed bars (rolling window)
        self._history: List[Bar] = []
        self._last_bar: Optional[Bar] = None
        self._last_indicators = IndicatorValues()

        self._last_cache_time: Optional[datetime] = None
        self._cached = CachedSignals()
        self._snapshot: Optional[SignalSnapshot] = None
        self._contradictions = 0

    @property
    def max_history(self) -> int:
        hma = self.calculators[CalculatorKind.CUSTOM_HMA]
        return max(
            self.config.rvol_short_window,
            self.config.rvol_long_window,
            self.config.vd_lookback_window,
            hma.max_history,
        )

    @property
    def cached(self) -> CachedSignals:
        return self._cached

    @property
    def snapshot(self) -> Optional[SignalSnapshot]:
        return self._snapshot

    @property
    def last_cache_time(self) -> Optional[datetime]:
        return self._last_cache_time

    @property
    def history_length(self) -> int:
        return len(self._history)

    def update(self, bar: Bar, indicators: IndicatorValues) -> None:
        """Recompute every calculator for a newly closed bar."""
        for calculator in self.calculators.values():
            calculator.update(bar, self._history, indicators)

        self._history.append(bar)
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]

        self._last_bar = bar
        self._last_indicators = indicators

    def readings(self) -> Tuple[CalculatorReading, ...]:
        return tuple(calc.reading() for calc in self.calculators.values())

    def cache_at_close(self, time: datetime) -> bool:
        """
        Freeze entry/exit decisions for this bar.

        Returns True if a new snapshot was cached.
        """
        if self._last_cache_time is not None and time <= self._last_cache_time:
            return False

        long_entries = sum(1 for k in self.entry_kinds if self.calculators[k].is_long)
        short_entries = sum(1 for k in self.entry_kinds if self.calculators[k].is_short)
        long_exits = sum(1 for k in self.exit_kinds if self.calculators[k].is_short)
        short_exits = sum(1 for k in self.exit_kinds if self.calculators[k].is_long)

        entry_required = self.config.entry_signals_required
        exit_required = self.config.exit_signals_required

        entry_long = entry_required > 0 and long_entries >= entry_required
        entry_short = entry_required > 0 and short_entries >= entry_required
        exit_long = exit_required > 0 and long_exits >= exit_required
        exit_short = exit_required > 0 and short_exits >= exit_required

        contradiction = entry_long and entry_short
        if contradiction:
            self._contradictions += 1
            self.logger.error(
                f"Contradictory entry signals at {time} "
                f"(long={long_entries}, short={short_entries}) - both discarded"
            )
            entry_long = False
            entry_short = False

        self._cached = CachedSignals(
            time=time,
            entry_long=entry_long,
            entry_short=entry_short,
            exit_long=exit_long,
            exit_short=exit_short,
            contradiction=contradiction,
        )

        bar = self._last_bar
        self._snapshot = SignalSnapshot(
            timestamp=time,
            close=bar.close if bar else 0.0,
            price_move=bar.price_move if bar else 0.0,
            volume_delta=bar.delta if bar else None,
            atr=self._last_indicators.atr,
            readings=self.readings(),
            signals=self._cached,
        )
        self._last_cache_time = time

        self.logger.debug(
            f"Signals cached {time}: EL={entry_long} ES={entry_short} "
            f"XL={exit_long} XS={exit_short}"
        )
        return True

    def get_status_summary(self) -> Dict:
        return {
            "last_cache_time": self._last_cache_time.isoformat() if self._last_cache_time else None,
            "history_bars": len(self._history),
            "contradictions": self._contradictions,
            "signals": self._cached.to_dict(),
            "readings": [r.to_dict() for r in self.readings()],
        }

    def reset(self) -> None:
        """Reset aggregator state (use with caution in production)."""
        self.calculators = build_calculators(self.config)
        self._history.clear()
        self._last_bar = None
        self._last_indicators = IndicatorValues()
        self._last_cache_time = None
        self._cached = CachedSignals()
        self._snapshot = None
