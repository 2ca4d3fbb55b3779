"""
Logging & Monitoring Module

Audit trail for the decision engine:
- Trade log (CSV): entries, exits, stop/TP hits, reversals
- Parameter log (CSV): calculator readings every few bars
- Risk event log (CSV): halts, resumes, daily resets
- System log (text)
- End-of-run summary report
"""

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .config import PathConfig
from .models import BrokerPosition, PositionState
from .risk_engine import RiskEvent
from .signal_engine import CalculatorKind, SignalSnapshot


LOGGER_NAME = "FuturesEngine"


def setup_logging(paths: PathConfig, verbose: bool = True) -> logging.Logger:
    """
    Configure system logging.

    Returns configured logger. Calling it again replaces the handlers.
    """
    paths.logs_dir.mkdir(parents=True, exist_ok=True)

    # Create logger
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_format)

    # File handler
    file_handler = logging.FileHandler(paths.system_log)
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(file_format)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


class _CsvLog:
    """Append-only CSV file with a fixed header row."""

    HEADERS: list = []

    def __init__(self, log_path: Path):
        self.log_path = log_path
        self.rows_written = 0
        self._ensure_headers()

    def _ensure_headers(self) -> None:
        """Ensure CSV has headers."""
        if not self.log_path.exists():
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(self.HEADERS)

    def _write_row(self, row: Dict) -> None:
        """Write a row to CSV."""
        with open(self.log_path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.HEADERS)
            writer.writerow(row)
        self.rows_written += 1


def _iso(ts: Optional[datetime]) -> str:
    return (ts or datetime.now(timezone.utc)).isoformat()


class TradeLogger(_CsvLog):
    """
    CSV trade logger for audit trail.

    Entries carry the calculator values that triggered them.
    """

    HEADERS = [
        "timestamp",
        "action",  # ENTRY, STACK, REVERSAL, EXIT, STOP_LOSS, TAKE_PROFIT, TIME_EXIT
        "position_id",
        "symbol",
        "side",
        "quantity",
        "entry_price",
        "exit_price",
        "stop_loss",
        "take_profit",
        "pnl",
        "reason",
        "signals",
    ]

    def __init__(self, log_path: Path, symbol: str = ""):
        self.symbol = symbol
        super().__init__(log_path)

    def log_entry(
        self,
        position: BrokerPosition,
        action: str,
        stop_loss: Optional[float],
        take_profit: Optional[float],
        snapshot: Optional[SignalSnapshot] = None,
    ) -> None:
        """Log an opened position."""
        signals = ""
        if snapshot is not None:
            signals = "|".join(
                f"{r.kind.value}={r.value:.4f}"
                for r in snapshot.readings
                if r.is_long or r.is_short
            )
        row = {
            "timestamp": _iso(position.open_time),
            "action": action,
            "position_id": position.id,
            "symbol": self.symbol,
            "side": position.side.value,
            "quantity": position.quantity,
            "entry_price": position.open_price,
            "exit_price": "",
            "stop_loss": stop_loss if stop_loss is not None else "",
            "take_profit": take_profit if take_profit is not None else "",
            "pnl": "",
            "reason": action,
            "signals": signals,
        }
        self._write_row(row)

    def log_exit(
        self,
        position: BrokerPosition,
        action: str,
        pnl: float,
        reason: str = "",
        time: Optional[datetime] = None,
    ) -> None:
        """Log a closed position."""
        row = {
            "timestamp": _iso(time),
            "action": action,
            "position_id": position.id,
            "symbol": self.symbol,
            "side": position.side.value,
            "quantity": position.quantity,
            "entry_price": position.open_price,
            "exit_price": position.current_price,
            "stop_loss": "",
            "take_profit": "",
            "pnl": f"{pnl:.2f}",
            "reason": reason or action,
            "signals": "",
        }
        self._write_row(row)


class ParameterLogger(_CsvLog):
    """
    CSV logger for periodic calculator snapshots.
    """

    HEADERS = [
        "timestamp",
        "close",
        "atr",
        "volume_delta",
        *[kind.value for kind in CalculatorKind],
        "entry_long",
        "entry_short",
        "exit_long",
        "exit_short",
        "position_state",
        "stack_count",
        "daily_pnl",
    ]

    def log_snapshot(
        self,
        snapshot: SignalSnapshot,
        position_state: PositionState,
        stack_count: int,
        daily_pnl: float,
    ) -> None:
        row = {
            "timestamp": snapshot.timestamp.isoformat(),
            "close": snapshot.close,
            "atr": f"{snapshot.atr:.4f}" if snapshot.atr is not None else "",
            "volume_delta": snapshot.volume_delta if snapshot.volume_delta is not None else "",
            "entry_long": snapshot.signals.entry_long,
            "entry_short": snapshot.signals.entry_short,
            "exit_long": snapshot.signals.exit_long,
            "exit_short": snapshot.signals.exit_short,
            "position_state": position_state.value,
            "stack_count": stack_count,
            "daily_pnl": f"{daily_pnl:.2f}",
        }
        for kind in CalculatorKind:
            row[kind.value] = f"{snapshot.value(kind):.4f}"
        self._write_row(row)


class RiskEventLogger(_CsvLog):
    """
    CSV logger for risk state transitions.
    """

    HEADERS = [
        "timestamp",
        "event",
        "message",
        "date",
        "realized_pnl",
        "unrealized_pnl",
        "total_pnl",
        "trade_count",
        "is_halted",
        "halt_reason",
    ]

    def log_event(self, event: RiskEvent) -> None:
        tracker = event.tracker
        row = {
            "timestamp": event.time.isoformat(),
            "event": event.event_type.value,
            "message": event.message,
            "date": tracker.get("date", ""),
            "realized_pnl": f"{tracker.get('realized_pnl', 0.0):.2f}",
            "unrealized_pnl": f"{tracker.get('unrealized_pnl', 0.0):.2f}",
            "total_pnl": f"{tracker.get('total_pnl', 0.0):.2f}",
            "trade_count": tracker.get("trade_count", 0),
            "is_halted": tracker.get("is_halted", False),
            "halt_reason": tracker.get("halt_reason") or "",
        }
        self._write_row(row)


def generate_summary_report(
    counters: Dict,
    position_stats: Dict,
    stop_stats: Dict,
    risk_stats: Dict,
) -> str:
    """End-of-run text summary."""
    return f"""
================================================================================
                         DECISION ENGINE SUMMARY
================================================================================

BARS
----
Processed:          {counters.get('bars_processed', 0)}
Ignored (stale):    {counters.get('bars_ignored', 0)}
Ticks:              {counters.get('ticks_processed', 0)}
Errors:             {counters.get('errors', 0)}

TRADES
------
Entries:            {position_stats.get('entries', 0)}
Stacks:             {position_stats.get('stacks', 0)}
Signal exits:       {position_stats.get('exits', 0)}
Reversals:          {position_stats.get('reversals', 0)}
Suppressed:         {position_stats.get('suppressed', 0)}
Stop-loss hits:     {counters.get('stop_hits', 0)}
Take-profit hits:   {counters.get('tp_hits', 0)}
Time exits:         {counters.get('time_exits', 0)}
Failed orders:      {position_stats.get('failed_orders', 0)}
Failed closes:      {position_stats.get('failed_closes', 0)}

STOPS
-----
Active:             {stop_stats.get('active_stops', 0)}
Trail updates:      {stop_stats.get('total_updates', 0)}

RISK
----
Closed trades:      {risk_stats.get('total_trades', 0)}
Win rate:           {risk_stats.get('win_rate', 0.0):.1%}
Total PnL:          ${risk_stats.get('total_pnl', 0.0):,.2f}
Max loss streak:    {risk_stats.get('max_consecutive_losses', 0)}

LOGS
----
Trade rows:         {counters.get('trade_log_rows', 0)}
Parameter rows:     {counters.get('parameter_log_rows', 0)}
Risk event rows:    {counters.get('risk_log_rows', 0)}
================================================================================
"""
