"""
Integration tests for the decision engine entry points.
"""

import csv
import logging
import random
import pytest
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.futures_engine.config import (
    EngineConfig,
    PathConfig,
    PositionConfig,
    RiskConfig,
    SignalConfig,
    WarmupConfig,
)
from src.futures_engine.execution_engine import OrderType, PaperBroker
from src.futures_engine.models import Bar, IndicatorValues, PositionState, Side
from src.futures_engine.position_controller import TradeAction
from src.futures_engine.orchestrator import StrategyEngine
from src.futures_engine.stop_engine import ExitTrigger


NY = ZoneInfo("America/New_York")


class FixedIndicators:
    """Constant ATR, no smoothing input."""

    def __init__(self, atr=1.0):
        self.atr = atr

    def update(self, bar):
        return IndicatorValues(atr=self.atr, smoothed=None)


class BrokenIndicators:

    def update(self, bar):
        raise RuntimeError("indicator feed down")


def neutral_bar(time):
    return Bar(time=time, open=4500.0, high=4502.0, low=4499.0, close=4500.5, volume=1000.0)


def long_divergence_bar(time):
    """Positive delta on a down bar."""
    return Bar(
        time=time, open=4501.0, high=4502.0, low=4499.0, close=4500.0,
        volume=1000.0, buy_volume=150.0, sell_volume=50.0,
    )


def short_divergence_bar(time):
    """Negative delta on an up bar."""
    return Bar(
        time=time, open=4498.5, high=4500.0, low=4498.5, close=4499.0,
        volume=1000.0, buy_volume=50.0, sell_volume=150.0,
    )


def make_config(tmp_path=None, risk=None, exit_signals_required=1):
    return EngineConfig(
        signals=SignalConfig(
            entry_signals=("vd_divergence",),
            exit_signals=("vd_divergence",),
            entry_signals_required=1,
            exit_signals_required=exit_signals_required,
        ),
        positions=PositionConfig(slippage_atr_multiplier=0.0),
        risk=risk or RiskConfig(),
        warmup=WarmupConfig(min_bars=3),
        paths=PathConfig(base_dir=tmp_path) if tmp_path is not None else PathConfig(),
        write_audit_logs=tmp_path is not None,
        verbose=False,
    )


def start_time(hour=13, minute=0):
    # Wednesday, inside Period 2
    return datetime(2024, 1, 10, hour, minute, tzinfo=NY)


def warm_up(engine, t0):
    for i in range(3):
        engine.process_bar_close(neutral_bar(t0 + timedelta(minutes=i)))
    return t0 + timedelta(minutes=3)


@pytest.fixture
def broker():
    return PaperBroker()


@pytest.fixture
def engine(broker):
    return StrategyEngine(
        make_config(), transport=broker, indicators=FixedIndicators(), rng=random.Random(1)
    )


class TestBarClose:

    def test_no_decisions_during_warmup(self, engine, broker):
        t0 = start_time()
        engine.process_bar_close(neutral_bar(t0))
        actions = engine.process_bar_close(long_divergence_bar(t0 + timedelta(minutes=1)))
        assert actions == []
        assert broker.get_open_positions() == []
        assert not engine.warmup.is_complete

    def test_entry_places_protective_orders(self, engine, broker):
        t = warm_up(engine, start_time())

        actions = engine.process_bar_close(long_divergence_bar(t))
        assert actions == [TradeAction.ENTRY]

        positions = broker.get_open_positions()
        assert len(positions) == 1
        position = positions[0]
        assert position.side is Side.BUY
        assert position.open_price == 4500.0

        # Previous low 4499 - ATR 1.0 = 4498 (8 ticks)
        assert engine.stops.get_current_stop(position.id) == pytest.approx(4498.0)
        assert engine.stops.get_take_profit(position.id) == pytest.approx(4502.0)
        assert len(broker.working_orders) == 2
        assert engine.positions.state is PositionState.LONG

    def test_duplicate_bar_ignored(self, engine, broker):
        t = warm_up(engine, start_time())
        bar = long_divergence_bar(t)
        engine.process_bar_close(bar)

        assert engine.process_bar_close(bar) == []
        assert engine.process_bar_close(neutral_bar(t - timedelta(minutes=1))) == []
        assert len(broker.get_open_positions()) == 1
        assert engine.get_status_summary()["counters"]["bars_ignored"] == 2

    def test_errors_are_contained(self, broker):
        engine = StrategyEngine(make_config(), transport=broker, indicators=BrokenIndicators())
        assert engine.process_bar_close(neutral_bar(start_time())) == []
        assert engine.get_status_summary()["counters"]["errors"] == 1

    def test_halt_blocks_entries(self, broker):
        config = make_config(risk=RiskConfig(enable_daily_loss_limit=True, max_daily_loss=50.0))
        engine = StrategyEngine(config, transport=broker, indicators=FixedIndicators())
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        engine.process_tick(4497.75, time=t + timedelta(seconds=30))
        assert engine.risk.daily_pnl == pytest.approx(-112.5)

        actions = engine.process_bar_close(long_divergence_bar(t + timedelta(minutes=1)))
        assert actions == []
        assert engine.risk.is_halted
        assert broker.get_open_positions() == []

    def test_reversal_loss_at_limit_skips_open(self, broker):
        config = make_config(
            risk=RiskConfig(enable_daily_loss_limit=True, max_daily_loss=50.0),
            exit_signals_required=0,
        )
        engine = StrategyEngine(config, transport=broker, indicators=FixedIndicators())
        t = warm_up(engine, start_time())
        assert engine.process_bar_close(long_divergence_bar(t)) == [TradeAction.ENTRY]

        actions = engine.process_bar_close(short_divergence_bar(t + timedelta(minutes=1)))
        assert actions == [TradeAction.EXIT]
        assert engine.risk.daily_pnl == pytest.approx(-50.0)
        assert engine.risk.is_halted
        assert broker.get_open_positions() == []
        assert engine.positions.state is PositionState.FLAT

    def test_reversal_within_limit_opens(self, broker):
        config = make_config(
            risk=RiskConfig(enable_daily_loss_limit=True, max_daily_loss=100.0),
            exit_signals_required=0,
        )
        engine = StrategyEngine(config, transport=broker, indicators=FixedIndicators())
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        actions = engine.process_bar_close(short_divergence_bar(t + timedelta(minutes=1)))
        assert actions == [TradeAction.REVERSAL]
        assert [p.side for p in broker.get_open_positions()] == [Side.SELL]
        assert not engine.risk.is_halted

    def test_time_exit_at_period_end(self, engine, broker):
        t = warm_up(engine, start_time(14, 40))
        assert engine.process_bar_close(long_divergence_bar(t)) == [TradeAction.ENTRY]

        t += timedelta(minutes=1)
        while t < start_time(15, 0):
            engine.process_bar_close(neutral_bar(t))
            t += timedelta(minutes=1)
        assert len(broker.get_open_positions()) == 1

        engine.process_bar_close(neutral_bar(start_time(15, 0)))
        assert broker.get_open_positions() == []
        assert broker.working_orders == []
        assert engine.get_status_summary()["counters"]["time_exits"] == 1
        assert not engine.time_filter.should_close_positions

    def test_rejected_time_exit_is_retried(self, engine, broker):
        t = warm_up(engine, start_time(14, 40))
        engine.process_bar_close(long_divergence_bar(t))

        t += timedelta(minutes=1)
        while t < start_time(15, 0):
            engine.process_bar_close(neutral_bar(t))
            t += timedelta(minutes=1)

        broker.reject_next(OrderType.CLOSE)
        engine.process_bar_close(neutral_bar(start_time(15, 0)))
        assert len(broker.get_open_positions()) == 1
        assert engine.time_filter.should_close_positions

        engine.process_bar_close(neutral_bar(start_time(15, 1)))
        assert broker.get_open_positions() == []
        assert broker.working_orders == []
        assert engine.get_status_summary()["counters"]["time_exits"] == 1
        assert not engine.time_filter.should_close_positions

    def test_rejected_time_exit_retried_on_tick(self, engine, broker):
        t = warm_up(engine, start_time(14, 40))
        engine.process_bar_close(long_divergence_bar(t))

        broker.reject_next(OrderType.CLOSE)
        engine.process_bar_close(neutral_bar(start_time(15, 0)))
        assert len(broker.get_open_positions()) == 1

        engine.process_tick(4500.25, time=start_time(15, 0) + timedelta(seconds=10))
        assert broker.get_open_positions() == []
        assert not engine.time_filter.should_close_positions

    def test_session_levels_logged_once_after_warmup(self, engine, caplog):
        caplog.set_level(logging.INFO, logger="FuturesEngine")
        t = warm_up(engine, start_time())
        engine.process_bar_close(neutral_bar(t))

        archived = [r for r in caplog.records if r.getMessage().startswith("Archived sessions")]
        assert len(archived) == 1

    def test_trailing_stop_moves_order(self, engine, broker):
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        higher_low = Bar(
            time=t + timedelta(minutes=1), open=4500.5, high=4502.0, low=4500.0,
            close=4501.0, volume=1000.0,
        )
        engine.process_bar_close(higher_low)

        position = broker.get_open_positions()[0]
        assert engine.stops.get_current_stop(position.id) == pytest.approx(4499.0)
        stop_orders = [o for o in broker.working_orders if o.order_type.value == "STOP"]
        assert [o.price for o in stop_orders] == [pytest.approx(4499.0)]


class TestTicks:

    def test_stop_loss_closes_and_cancels(self, engine, broker):
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        assert engine.process_tick(4499.0) == []
        triggers = engine.process_tick(4497.75, time=t + timedelta(seconds=30))
        assert triggers == [ExitTrigger.STOP_LOSS]
        assert broker.get_open_positions() == []
        assert broker.working_orders == []
        assert engine.stops.records == []
        assert engine.positions.state is PositionState.FLAT
        assert engine.risk.daily_pnl == pytest.approx(-112.5)

    def test_quote_tests_longs_against_bid(self, engine, broker):
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        assert engine.process_quote(4501.75, 4502.0) == []
        assert engine.process_quote(4502.0, 4502.25) == [ExitTrigger.TAKE_PROFIT]
        assert engine.get_status_summary()["counters"]["tp_hits"] == 1

    def test_quote_counts_as_one_tick(self, engine):
        warm_up(engine, start_time())
        engine.process_quote(4500.0, 4500.25)
        engine.process_quote(4500.25, 4500.5)
        assert engine.get_status_summary()["counters"]["ticks_processed"] == 2

    def test_quote_retries_time_exit_once(self, engine, broker):
        t = warm_up(engine, start_time(14, 40))
        engine.process_bar_close(long_divergence_bar(t))

        broker.reject_next(OrderType.CLOSE)
        engine.process_bar_close(neutral_bar(start_time(15, 0)))

        engine.process_quote(4500.25, 4500.5, time=start_time(15, 0) + timedelta(seconds=10))
        assert broker.get_open_positions() == []
        counters = engine.get_status_summary()["counters"]
        assert counters["time_exits"] == 1
        assert counters["ticks_processed"] == 1

    def test_tick_never_opens(self, engine, broker):
        warm_up(engine, start_time())
        engine.process_tick(4500.0)
        assert broker.get_open_positions() == []

    def test_external_close_is_tracked(self, engine, broker):
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))
        position = broker.get_open_positions()[0]

        broker.close_position(position.id, 4501.0)
        assert engine.positions.state is PositionState.FLAT
        assert engine.stops.records == []
        assert engine.risk.daily_pnl == pytest.approx(50.0)


class TestShutdown:

    def test_shutdown_closes_everything(self, engine, broker):
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))

        engine.shutdown()
        assert engine.is_shutdown
        assert broker.get_open_positions() == []
        assert broker.working_orders == []

        engine.shutdown()
        assert engine.process_bar_close(long_divergence_bar(t + timedelta(minutes=1))) == []
        assert engine.process_tick(4000.0) == []

    def test_subscription_released(self, engine, broker):
        engine.shutdown()
        broker.place_market_order(Side.BUY, 1.0, 4500.0)
        assert engine.stops.records == []

    def test_status_accessors(self, engine):
        warm_up(engine, start_time())
        assert engine.position_status() == "FLAT"
        assert engine.time_filter_status().startswith("In Period 2")
        assert "ACTIVE" in engine.daily_risk_summary()
        assert "DECISION ENGINE SUMMARY" in engine.summary_report()


class TestAuditLogs:

    def test_csv_logs_written(self, tmp_path, broker):
        engine = StrategyEngine(
            make_config(tmp_path), transport=broker, indicators=FixedIndicators()
        )
        t = warm_up(engine, start_time())
        engine.process_bar_close(long_divergence_bar(t))
        engine.process_bar_close(neutral_bar(t + timedelta(minutes=1)))
        engine.process_tick(4497.75, time=t + timedelta(minutes=1, seconds=30))
        engine.shutdown()

        paths = engine.config.paths
        with open(paths.trade_log, newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["action"] for r in rows] == ["ENTRY", "CLOSE"]
        assert rows[1]["reason"] == "STOP_LOSS"

        with open(paths.parameter_log, newline="") as f:
            assert len(list(csv.DictReader(f))) == 1

        assert paths.risk_log.exists()
        assert paths.system_log.exists()
