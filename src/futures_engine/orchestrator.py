"""
Futures Decision Engine Orchestrator

Composes the components behind two entry points:

BAR CLOSE (process_bar_close):
1. Drop bars not newer than the last one seen
2. Indicators -> sessions -> signal calculators
3. Refresh stop inputs, trail open stops, resend moved stop orders
4. Warmup gate (no decisions until complete)
5. Cache signals, time filter (should-close -> close all, stop; the flag
   stays set until every close has gone through)
6. Entry permission: risk halt, position size, approaching period end
7. Position controller decision (risk halt re-checked inside a reversal)
8. Every few bars: parameter snapshot and unrealized PnL refresh

TICK (process_tick / process_quote):
- Stop-loss / take-profit hit tests on open positions
- Honours the time filter close flag
- Never opens positions

No exception escapes either entry point.
"""

import logging
import random
from datetime import datetime
from typing import Dict, List, Optional

from .config import EngineConfig
from .execution_engine import (
    OrderTransport,
    PaperBroker,
    PositionListener,
    ProtectiveOrderManager,
)
from .indicators import IndicatorProvider
from .logging_module import (
    LOGGER_NAME,
    ParameterLogger,
    RiskEventLogger,
    TradeLogger,
    generate_summary_report,
    setup_logging,
)
from .models import Bar, BrokerPosition, Side
from .position_controller import PositionController, SlippageModel, TradeAction
from .risk_engine import RiskGate
from .session_engine import SessionTracker
from .signal_engine import SignalAggregator
from .stop_engine import ExitTrigger, StopEngine
from .time_filter import TimeFilter
from .warmup import WarmupGate


_ENTRY_ACTIONS = (TradeAction.REVERSAL, TradeAction.STACK, TradeAction.ENTRY)


class StrategyEngine(PositionListener):
    """
    Single-instrument decision engine.

    Coordinates:
    - Signal aggregation and session tracking
    - Stops and protective orders
    - Time filter and risk gate
    - Position controller
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        transport: Optional[OrderTransport] = None,
        indicators=None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or EngineConfig()
        cfg = self.config

        # Logging
        if logger is not None:
            self.logger = logger
        elif cfg.write_audit_logs:
            cfg.ensure_directories()
            self.logger = setup_logging(cfg.paths, cfg.verbose)
        else:
            self.logger = logging.getLogger(LOGGER_NAME)

        instrument = cfg.instrument

        # Components
        self.indicators = indicators or IndicatorProvider(cfg.signals)
        self.signals = SignalAggregator(cfg.signals, self.logger)
        self.sessions = SessionTracker(cfg.sessions, instrument, self.logger)
        self.stops = StopEngine(cfg.stops, instrument.tick_size, self.logger)
        self.time_filter = TimeFilter(cfg.time_filter, instrument.timezone, self.logger)
        self.risk = RiskGate(
            cfg.risk, cfg.positions, self.time_filter.periods, instrument.timezone, self.logger
        )
        self.warmup = WarmupGate(cfg.warmup, self.logger)

        self.transport = transport or PaperBroker(instrument, self.logger)
        self.slippage = SlippageModel.from_config(cfg.positions, instrument.tick_size, rng)
        self.positions = PositionController(cfg.positions, self.transport, self.slippage, self.logger)
        self.protective = ProtectiveOrderManager(self.transport, self.stops, self.sessions, self.logger)

        # CSV loggers
        self.trade_logger: Optional[TradeLogger] = None
        self.parameter_logger: Optional[ParameterLogger] = None
        self.risk_logger: Optional[RiskEventLogger] = None
        if cfg.write_audit_logs:
            self.trade_logger = TradeLogger(cfg.paths.trade_log, instrument.symbol)
            self.parameter_logger = ParameterLogger(cfg.paths.parameter_log)
            self.risk_logger = RiskEventLogger(cfg.paths.risk_log)

        # State
        self._last_bar_time: Optional[datetime] = None
        self._last_bar: Optional[Bar] = None
        self._last_atr: Optional[float] = None
        self._now: Optional[datetime] = None
        self._post_warmup_bars = 0
        self._opened: List[BrokerPosition] = []
        self._is_shutdown = False

        # Statistics
        self._counters = {
            "bars_processed": 0,
            "bars_ignored": 0,
            "ticks_processed": 0,
            "errors": 0,
            "stop_hits": 0,
            "tp_hits": 0,
            "time_exits": 0,
        }

        self._subscription = self.transport.subscribe(self)
        self.positions.sync(self.transport.get_open_positions())

        self.logger.info("=" * 60)
        self.logger.info(f"DECISION ENGINE READY: {instrument.symbol}")
        self.logger.info("=" * 60)

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    # =========================================================================
    # BAR CLOSE
    # =========================================================================

    def process_bar_close(self, bar: Bar) -> List[TradeAction]:
        """Run one bar-close evaluation. Returns the trade actions taken."""
        if self._is_shutdown:
            return []
        try:
            return self._process_bar(bar)
        except Exception as e:
            self._counters["errors"] += 1
            self.logger.exception(f"Error processing bar {bar.time}: {e}")
            return []

    def _process_bar(self, bar: Bar) -> List[TradeAction]:
        # Step 1: stale / duplicate bars
        if self._last_bar_time is not None and bar.time <= self._last_bar_time:
            self._counters["bars_ignored"] += 1
            self.logger.debug(f"Ignoring bar {bar.time}: not after {self._last_bar_time}")
            return []
        self._last_bar_time = bar.time
        self._now = bar.time
        self._counters["bars_processed"] += 1

        # Step 2: indicators, sessions, calculators
        indicators = self.indicators.update(bar)
        self._last_atr = indicators.atr
        self.sessions.process_bar(bar)
        self.signals.update(bar, indicators)

        # Step 3: stops
        self.stops.update_market(indicators.atr, bar)
        self._trail_stops(bar.close)
        self._last_bar = bar

        # Step 4: warmup
        was_complete = self.warmup.is_complete
        if not self.warmup.observe(bar):
            return []
        if not was_complete:
            self.sessions.log_session_states()

        # Step 5: cache and time filter
        self.signals.cache_at_close(bar.time)
        cached = self.signals.cached
        halted = self.risk.should_halt(bar.time)
        allowed = self.time_filter.is_trading_allowed(bar.time)

        if self.time_filter.should_close_positions:
            self._time_exit(bar.close, bar.time)
            self._after_bar(bar)
            return []

        if not allowed:
            self._after_bar(bar)
            return []

        # Step 6: entry permission
        entries_allowed = (
            not halted
            and self.risk.validate_position_size(
                self.config.positions.contract_size, self.positions.positions
            )
            and not self.time_filter.is_approaching_period_end(bar.time)
        )
        if not entries_allowed and (cached.entry_long or cached.entry_short):
            self.logger.debug(f"Entry signals blocked at {bar.time} (halted={halted})")

        # Step 7: decision
        actions = self.positions.process_signals(
            entry_long=cached.entry_long and entries_allowed,
            entry_short=cached.entry_short and entries_allowed,
            exit_long=cached.exit_long,
            exit_short=cached.exit_short,
            price=bar.close,
            atr=indicators.atr,
            time=bar.time,
            can_open=lambda: not self.risk.should_halt(bar.time),
        )
        self._log_entries(actions)

        # Step 8: periodic bookkeeping
        self._after_bar(bar)
        return actions

    def _trail_stops(self, price: float) -> None:
        for position in self.positions.positions:
            if self.stops.update(position.id, price, position.side, position.open_price):
                self.protective.sync_stop_order(position.id)

    def _time_exit(self, price: float, time: Optional[datetime]) -> None:
        reason = self.time_filter.exit_reason or "Period ended"
        closed = self.positions.close_all(f"TIME_EXIT: {reason}", price, self._last_atr, time)
        self._counters["time_exits"] += closed
        if self.positions.positions:
            self.logger.warning(
                f"Time exit incomplete: {len(self.positions.positions)} positions still open, will retry"
            )
            return
        self.time_filter.reset_close_flag()

    def _after_bar(self, bar: Bar) -> None:
        self._post_warmup_bars += 1
        if self._post_warmup_bars % self.config.parameter_log_interval == 0:
            self.risk.update_unrealized_pnl(self.transport.get_open_positions())
            snapshot = self.signals.snapshot
            if self.parameter_logger is not None and snapshot is not None:
                self.parameter_logger.log_snapshot(
                    snapshot,
                    self.positions.state,
                    self.positions.stack_count,
                    self.risk.daily_pnl,
                )
        self._flush_risk_events()

    def _log_entries(self, actions: List[TradeAction]) -> None:
        opened, self._opened = self._opened, []
        if not opened:
            return
        action = next((a for a in _ENTRY_ACTIONS if a in actions), TradeAction.ENTRY)
        if self.trade_logger is None:
            return
        for position in opened:
            self.trade_logger.log_entry(
                position,
                action.value,
                self.stops.get_current_stop(position.id),
                self.stops.get_take_profit(position.id),
                self.signals.snapshot,
            )

    def _flush_risk_events(self) -> None:
        events = self.risk.pop_events()
        if self.risk_logger is not None:
            for event in events:
                self.risk_logger.log_event(event)

    # =========================================================================
    # TICKS
    # =========================================================================

    def process_tick(
        self,
        price: float,
        side: Optional[Side] = None,
        time: Optional[datetime] = None,
    ) -> List[ExitTrigger]:
        """
        Hit-test open positions at `price`.

        With `side` given only positions on that side are tested.
        Returns the triggers that closed a position.
        """
        if self._is_shutdown:
            return []
        try:
            return self._process_tick(price, side, time)
        except Exception as e:
            self._counters["errors"] += 1
            self.logger.exception(f"Error processing tick {price}: {e}")
            return []

    def _process_tick(
        self, price: float, side: Optional[Side], time: Optional[datetime]
    ) -> List[ExitTrigger]:
        if time is not None:
            self._now = time
        self._counters["ticks_processed"] += 1
        triggered = self._hit_test(price, side, time)
        self._retry_time_exit(price, time)
        return triggered

    def _hit_test(
        self, price: float, side: Optional[Side], time: Optional[datetime]
    ) -> List[ExitTrigger]:
        triggered: List[ExitTrigger] = []
        for position in self.positions.positions:
            if side is not None and position.side is not side:
                continue
            trigger = self.stops.check_hit(position.id, price, position.side)
            if trigger is None:
                continue
            if self.positions.close_position(position, price, self._last_atr, trigger.value, time):
                triggered.append(trigger)
                key = "stop_hits" if trigger is ExitTrigger.STOP_LOSS else "tp_hits"
                self._counters[key] += 1
        return triggered

    def _retry_time_exit(self, price: float, time: Optional[datetime]) -> None:
        if self.time_filter.should_close_positions and self.positions.positions:
            self._time_exit(price, time)

    def process_quote(
        self,
        bid: float,
        ask: float,
        time: Optional[datetime] = None,
    ) -> List[ExitTrigger]:
        """Bid tests longs, ask tests shorts. Counts as one tick."""
        if self._is_shutdown:
            return []
        try:
            if time is not None:
                self._now = time
            self._counters["ticks_processed"] += 1
            triggered = self._hit_test(bid, Side.BUY, time) + self._hit_test(ask, Side.SELL, time)
            self._retry_time_exit(bid, time)
            return triggered
        except Exception as e:
            self._counters["errors"] += 1
            self.logger.exception(f"Error processing quote {bid}/{ask}: {e}")
            return []

    # =========================================================================
    # BROKER NOTIFICATIONS
    # =========================================================================

    def on_position_added(self, position: BrokerPosition) -> None:
        self.positions.sync(self.transport.get_open_positions())
        self.protective.place_protective_orders(position)
        self._opened.append(position)

    def on_position_removed(self, position: BrokerPosition, pnl: float) -> None:
        self.positions.sync(self.transport.get_open_positions())
        self.protective.cancel_orders_for_position(position.id)
        self.stops.remove(position.id)
        self.risk.update_realized_pnl(pnl, self._now)

        reason = self.positions.pop_close_reason(position.id) or "EXTERNAL"
        self.logger.info(f"Position {position.id} closed ({reason}): PnL ${pnl:,.2f}")
        if self.trade_logger is not None:
            self.trade_logger.log_exit(position, "CLOSE", pnl, reason, self._now)

    # =========================================================================
    # SHUTDOWN / STATUS
    # =========================================================================

    def shutdown(self) -> None:
        """Close everything, cancel orders, release the subscription. Idempotent."""
        if self._is_shutdown:
            return

        self.logger.info("=" * 60)
        self.logger.info("ENGINE SHUTDOWN")
        self.logger.info("=" * 60)

        try:
            if self.positions.positions:
                price = self._last_bar.close if self._last_bar else self.positions.positions[0].current_price
                self.positions.close_all("SHUTDOWN", price, self._last_atr, self._now)
            self.protective.cancel_all()
            self.stops.clear_all()
            self._flush_risk_events()
        except Exception as e:
            self._counters["errors"] += 1
            self.logger.exception(f"Error during shutdown: {e}")
        finally:
            self._subscription.close()
            self._is_shutdown = True

        self.logger.info(self.summary_report())
        self.logger.info("Shutdown complete")

    def summary_report(self) -> str:
        counters = dict(self._counters)
        if self.trade_logger is not None:
            counters["trade_log_rows"] = self.trade_logger.rows_written
        if self.parameter_logger is not None:
            counters["parameter_log_rows"] = self.parameter_logger.rows_written
        if self.risk_logger is not None:
            counters["risk_log_rows"] = self.risk_logger.rows_written
        return generate_summary_report(
            counters,
            self.positions.get_statistics(),
            self.stops.get_statistics(),
            self.risk.get_statistics(),
        )

    def position_status(self) -> str:
        return self.positions.get_position_status()

    def daily_risk_summary(self) -> str:
        return self.risk.get_daily_summary()

    def time_filter_status(self) -> str:
        return self.time_filter.get_current_status()

    def get_status_summary(self) -> Dict:
        """Get current engine status."""
        return {
            "shutdown": self._is_shutdown,
            "last_bar_time": self._last_bar_time.isoformat() if self._last_bar_time else None,
            "counters": dict(self._counters),
            "warmup": self.warmup.get_status_summary(),
            "position": self.positions.get_statistics(),
            "position_status": self.position_status(),
            "signals": self.signals.cached.to_dict(),
            "sessions": self.sessions.get_status_summary(),
            "stops": self.stops.get_statistics(),
            "orders": self.protective.get_statistics(),
            "risk": self.risk.get_statistics(),
            "daily_risk": self.daily_risk_summary(),
            "time_filter": self.time_filter.get_status_summary(),
        }
