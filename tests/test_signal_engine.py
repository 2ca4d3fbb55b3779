"""
Tests for signal calculators and the voting aggregator.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.futures_engine.config import SignalConfig
from src.futures_engine.indicators import IndicatorProvider
from src.futures_engine.models import Bar, IndicatorValues
from src.futures_engine.signal_engine import (
    CalculatorKind,
    CustomHmaCalculator,
    RvolCalculator,
    SignalAggregator,
    VdDivergenceCalculator,
    VdPriceRatioCalculator,
    VdStrengthCalculator,
    VdVolumeRatioCalculator,
    hull_moving_average,
)


T0 = datetime(2024, 1, 10, 18, 0, tzinfo=timezone.utc)


def make_bar(i, open_=100.0, close=100.0, volume=1000.0, buy=None, sell=None, high=None, low=None):
    return Bar(
        time=T0 + timedelta(minutes=i),
        open=open_,
        high=high if high is not None else max(open_, close) + 0.5,
        low=low if low is not None else min(open_, close) - 0.5,
        close=close,
        volume=volume,
        buy_volume=buy,
        sell_volume=sell,
    )


@pytest.fixture
def delta_history():
    """20 bars with delta +50 and a 1.0 price move each."""
    return [make_bar(i, open_=100.0, close=101.0, buy=75.0, sell=25.0) for i in range(20)]


class TestRvol:

    def test_volume_spike_reports_long(self):
        """3x volume spike with rising normalized RVOL above 1.0 fires long."""
        calc = RvolCalculator(short_window=10, long_window=20, threshold=1.0, use_median=False)
        history = [make_bar(i, volume=100.0) for i in range(20)]
        indicators = IndicatorValues(atr=1.0, smoothed=1.0)

        calc.update(make_bar(20, volume=100.0), history, indicators)
        assert calc.value == pytest.approx(1.0)
        assert not calc.is_long and not calc.is_short

        calc.update(make_bar(21, volume=300.0), history, indicators)
        assert calc.value == pytest.approx(7.0 / 3.0)
        assert calc.is_long
        assert not calc.is_short

    def test_volume_drop_reports_short(self):
        calc = RvolCalculator(10, 20, 1.0, False)
        history = [make_bar(i, volume=100.0) for i in range(20)]
        indicators = IndicatorValues(atr=1.0, smoothed=1.0)

        calc.update(make_bar(20, volume=400.0), history, indicators)
        calc.update(make_bar(21, volume=100.0), history, indicators)
        assert calc.is_short
        assert not calc.is_long

    def test_small_change_no_signal(self):
        calc = RvolCalculator(10, 20, 1.0, False)
        history = [make_bar(i, volume=100.0) for i in range(20)]
        indicators = IndicatorValues(atr=1.0, smoothed=1.0)

        calc.update(make_bar(20, volume=100.0), history, indicators)
        calc.update(make_bar(21, volume=150.0), history, indicators)
        assert not calc.is_long and not calc.is_short

    def test_missing_atr_no_signal(self):
        calc = RvolCalculator(10, 20, 1.0, False)
        history = [make_bar(i, volume=100.0) for i in range(20)]
        calc.update(make_bar(20, volume=100.0), history, IndicatorValues(atr=None, smoothed=1.0))
        calc.update(make_bar(21, volume=900.0), history, IndicatorValues(atr=None, smoothed=1.0))
        assert not calc.is_long and not calc.is_short

    def test_median_window(self):
        calc = RvolCalculator(3, 3, 1.0, use_median=True)
        history = [make_bar(0, volume=100.0), make_bar(1, volume=100.0), make_bar(2, volume=10000.0)]
        calc.update(make_bar(3, volume=200.0), history, IndicatorValues(atr=1.0, smoothed=0.0))
        assert calc.rvol_short == pytest.approx(2.0)


class TestVolumeDelta:

    def test_strength_long_on_strong_positive_delta(self, delta_history):
        calc = VdStrengthCalculator(lookback=20, threshold=1.2, use_median=False)
        calc.update(make_bar(20, buy=150.0, sell=50.0), delta_history, IndicatorValues())
        assert calc.is_long
        assert calc.value == pytest.approx(100.0)

    def test_strength_short_on_strong_negative_delta(self, delta_history):
        calc = VdStrengthCalculator(20, 1.2, False)
        calc.update(make_bar(20, buy=50.0, sell=150.0), delta_history, IndicatorValues())
        assert calc.is_short
        assert not calc.is_long

    def test_strength_below_threshold(self, delta_history):
        calc = VdStrengthCalculator(20, 1.2, False)
        calc.update(make_bar(20, buy=80.0, sell=25.0), delta_history, IndicatorValues())
        assert not calc.is_long and not calc.is_short

    def test_missing_delta_no_signal(self, delta_history):
        calc = VdStrengthCalculator(20, 1.2, False)
        calc.update(make_bar(20), delta_history, IndicatorValues())
        assert not calc.is_long and not calc.is_short

    def test_window_excludes_current_bar(self):
        """Average comes from prior bars only."""
        calc = VdStrengthCalculator(20, 1.2, False)
        history = [make_bar(0, buy=60.0, sell=50.0)]  # |delta| = 10
        calc.update(make_bar(1, buy=1050.0, sell=1000.0), history, IndicatorValues())
        assert calc.average == pytest.approx(10.0)
        assert calc.is_long

    def test_price_ratio(self, delta_history):
        # Window: move 1.0 per 50 delta -> 0.02. Bar: 4.0 / 50 = 0.08
        calc = VdPriceRatioCalculator(20, 1.5, False)
        calc.update(make_bar(20, open_=100.0, close=104.0, buy=75.0, sell=25.0), delta_history, IndicatorValues())
        assert calc.average == pytest.approx(0.02)
        assert calc.value == pytest.approx(0.08)
        assert calc.is_long

    def test_volume_ratio(self, delta_history):
        # Window: 50 / 1000 = 0.05. Bar: 200 / 1000 = 0.2
        calc = VdVolumeRatioCalculator(20, 1.3, False)
        calc.update(make_bar(20, buy=100.0, sell=300.0), delta_history, IndicatorValues())
        assert calc.value == pytest.approx(0.2)
        assert calc.is_short

    def test_divergence(self):
        calc = VdDivergenceCalculator()
        calc.update(make_bar(0, open_=101.0, close=100.0, buy=80.0, sell=20.0), [], IndicatorValues())
        assert calc.is_long and not calc.is_short

        calc.update(make_bar(1, open_=100.0, close=101.0, buy=20.0, sell=80.0), [], IndicatorValues())
        assert calc.is_short and not calc.is_long

        calc.update(make_bar(2, open_=100.0, close=101.0, buy=80.0, sell=20.0), [], IndicatorValues())
        assert not calc.is_long and not calc.is_short


class TestCustomHma:

    def test_hull_of_constant_series(self):
        assert hull_moving_average([5.0] * 30, 16) == pytest.approx(5.0)

    def test_hull_needs_enough_values(self):
        assert hull_moving_average([1.0] * 10, 16) is None

    def test_period_follows_atr(self):
        calc = CustomHmaCalculator(base_period=20)
        history = [make_bar(i) for i in range(10)]
        calc.update(make_bar(10), history, IndicatorValues(atr=4.0))
        assert calc.period == 5

        calc.update(make_bar(11), history, IndicatorValues(atr=100.0))
        assert calc.period == CustomHmaCalculator.MIN_PERIOD

        calc.update(make_bar(12), history, IndicatorValues(atr=0.01))
        assert calc.period == CustomHmaCalculator.MAX_PERIOD

    def test_close_above_average_is_long(self):
        calc = CustomHmaCalculator(base_period=20)
        history = [make_bar(0, close=100.0)]
        # Period 2: HMA = (4 * close - prev) / 3
        calc.update(make_bar(1, close=99.0), history, IndicatorValues(atr=10.0))
        assert calc.is_long

        calc.update(make_bar(1, close=101.0), history, IndicatorValues(atr=10.0))
        assert calc.is_short

    def test_no_atr_no_signal(self):
        calc = CustomHmaCalculator(base_period=20)
        calc.update(make_bar(1, close=99.0), [make_bar(0)], IndicatorValues(atr=None))
        assert not calc.is_long and not calc.is_short


class TestSignalAggregator:

    @pytest.fixture
    def conflict_config(self):
        return SignalConfig(
            entry_signals=("vd_strength", "custom_hma"),
            exit_signals=("vd_strength",),
            entry_signals_required=1,
            exit_signals_required=1,
        )

    def test_contradiction_discards_both_entries(self, conflict_config, delta_history):
        agg = SignalAggregator(conflict_config)
        indicators = IndicatorValues(atr=10.0, smoothed=None)
        for bar in delta_history:
            agg.update(bar, indicators)

        # Strong positive delta (long) on a rising close (HMA short)
        bar = make_bar(20, open_=100.0, close=102.0, buy=150.0, sell=50.0)
        agg.update(bar, indicators)
        assert agg.cache_at_close(bar.time)

        cached = agg.cached
        assert cached.contradiction
        assert not cached.entry_long
        assert not cached.entry_short
        assert agg.snapshot.signals.contradiction

    def test_exit_uses_opposite_readings(self, delta_history):
        config = SignalConfig(
            entry_signals=("vd_strength",),
            exit_signals=("vd_strength",),
            entry_signals_required=1,
            exit_signals_required=1,
        )
        agg = SignalAggregator(config)
        for bar in delta_history:
            agg.update(bar, IndicatorValues())

        bar = make_bar(20, buy=50.0, sell=150.0)
        agg.update(bar, IndicatorValues())
        agg.cache_at_close(bar.time)
        assert agg.cached.entry_short
        assert agg.cached.exit_long
        assert not agg.cached.exit_short

    def test_zero_required_never_fires(self, delta_history):
        config = SignalConfig(entry_signals_required=0, exit_signals_required=0)
        agg = SignalAggregator(config)
        for bar in delta_history:
            agg.update(bar, IndicatorValues())
        bar = make_bar(20, buy=150.0, sell=50.0)
        agg.update(bar, IndicatorValues())
        agg.cache_at_close(bar.time)
        assert not agg.cached.entry_long
        assert not agg.cached.exit_short

    def test_cache_is_idempotent(self, delta_history):
        config = SignalConfig(
            entry_signals=("vd_strength",), exit_signals=("vd_strength",),
            entry_signals_required=1, exit_signals_required=1,
        )
        agg = SignalAggregator(config)
        for bar in delta_history:
            agg.update(bar, IndicatorValues())

        bar = make_bar(20, buy=150.0, sell=50.0)
        agg.update(bar, IndicatorValues())
        assert agg.cache_at_close(bar.time)
        snapshot = agg.snapshot
        assert agg.cached.entry_long

        # Calculators change, cache must not
        agg.update(make_bar(21, buy=50.0, sell=150.0), IndicatorValues())
        assert not agg.cache_at_close(bar.time)
        assert not agg.cache_at_close(bar.time - timedelta(minutes=5))
        assert agg.snapshot is snapshot
        assert agg.cached.entry_long

    def test_snapshot_records_every_calculator(self, delta_history):
        agg = SignalAggregator(SignalConfig())
        for bar in delta_history:
            agg.update(bar, IndicatorValues(atr=1.0, smoothed=1.0))
        agg.cache_at_close(delta_history[-1].time)

        snapshot = agg.snapshot
        assert {r.kind for r in snapshot.readings} == set(CalculatorKind)
        data = snapshot.to_dict()
        assert "rvol_value" in data
        assert "vd_divergence_long" in data

    def test_history_is_bounded(self):
        agg = SignalAggregator(SignalConfig())
        provider = IndicatorProvider(SignalConfig())
        for i in range(400):
            bar = make_bar(i, buy=60.0, sell=40.0)
            agg.update(bar, provider.update(bar))
        assert agg.history_length == agg.max_history
