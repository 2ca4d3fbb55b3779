"""
Risk Engine - Daily Loss Governor

CRITICAL COMPONENT - Gates every new entry.
This module can ONLY block entries, never force them.

STATE:
- One active DailyRiskTracker (realized + unrealized PnL of the day)
- Archived and replaced on a new trading day or on entering an
  enabled trading period
- Halted when |total PnL| >= max daily loss (limit enabled)
- A daily-loss halt clears itself on the next rollover; a manual halt
  persists until manual_resume()
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

import numpy as np

from .config import PositionConfig, RiskConfig
from .models import BrokerPosition
from .time_filter import TradingPeriod, to_session_time


class HaltReason(Enum):
    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
    MANUAL = "MANUAL"


class RiskEventType(Enum):
    HALT = "HALT"
    RESUME = "RESUME"
    DAILY_RESET = "DAILY_RESET"


@dataclass
class DailyRiskTracker:
    """PnL of one trading day or period."""
    date: date
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    trade_count: int = 0
    win_count: int = 0
    loss_count: int = 0
    max_drawdown: float = 0.0               # Most negative total seen
    max_profit: float = 0.0                 # Most positive total seen
    is_halted: bool = False
    halt_reason: Optional[HaltReason] = None
    halt_time: Optional[datetime] = None

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def win_rate(self) -> float:
        if self.trade_count == 0:
            return 0.0
        return self.win_count / self.trade_count

    def update_extremes(self) -> None:
        total = self.total_pnl
        self.max_drawdown = min(self.max_drawdown, total)
        self.max_profit = max(self.max_profit, total)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "total_pnl": self.total_pnl,
            "trade_count": self.trade_count,
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": self.win_rate,
            "max_drawdown": self.max_drawdown,
            "max_profit": self.max_profit,
            "is_halted": self.is_halted,
            "halt_reason": self.halt_reason.value if self.halt_reason else None,
        }


@dataclass(frozen=True)
class RiskEvent:
    """Halt / resume / reset notification for the audit log."""
    event_type: RiskEventType
    time: datetime
    message: str
    tracker: Dict


class RiskGate:
    """
    Daily risk state machine.

    should_halt() is evaluated on every closed bar, halted or not, so a
    rollover can resume trading.
    """

    HISTORY_SIZE = 90

    def __init__(
        self,
        config: RiskConfig,
        position_config: PositionConfig,
        periods: Sequence[TradingPeriod] = (),
        timezone_name: str = "America/New_York",
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.position_config = position_config
        self.periods = tuple(p for p in periods if p.enabled)
        self.tz = ZoneInfo(timezone_name)
        self.logger = logger or logging.getLogger(__name__)

        self.tracker: Optional[DailyRiskTracker] = None
        self._history: List[DailyRiskTracker] = []
        self._last_period: Optional[str] = None
        self._events: List[RiskEvent] = []

        # Streaks across days
        self._consecutive_losses = 0
        self._consecutive_wins = 0
        self._max_consecutive_losses = 0
        self._max_consecutive_wins = 0

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_halted(self) -> bool:
        return self.tracker is not None and self.tracker.is_halted

    @property
    def halt_reason(self) -> Optional[HaltReason]:
        return self.tracker.halt_reason if self.tracker else None

    @property
    def daily_pnl(self) -> float:
        return self.tracker.total_pnl if self.tracker else 0.0

    @property
    def daily_history(self) -> List[DailyRiskTracker]:
        return list(self._history)

    def remaining_daily_loss(self) -> float:
        """Headroom before the limit trips. inf when the limit is disabled."""
        if not self.config.enable_daily_loss_limit:
            return float("inf")
        return max(0.0, self.config.max_daily_loss - abs(self.daily_pnl))

    def pop_events(self) -> List[RiskEvent]:
        events, self._events = self._events, []
        return events

    # =========================================================================
    # ROLLOVER / HALT
    # =========================================================================

    def _active_period(self, local: datetime) -> Optional[str]:
        for period in self.periods:
            if period.is_time_in_period(local):
                return period.name
        return None

    def _ensure_tracker(self, local: datetime) -> DailyRiskTracker:
        if self.tracker is None:
            self.tracker = DailyRiskTracker(date=local.date())
            self._last_period = self._active_period(local)
        return self.tracker

    def should_halt(self, now: datetime) -> bool:
        """Roll the tracker if due, then report whether entries are blocked."""
        local = to_session_time(now, self.tz)

        if self.tracker is None:
            self._ensure_tracker(local)
        else:
            period = self._active_period(local)
            new_day = local.date() != self.tracker.date
            entered_period = period is not None and period != self._last_period
            self._last_period = period
            if new_day or entered_period:
                self._rollover(local, "new day" if new_day else f"entered {period}")

        if self.tracker.is_halted:
            return True

        if self.config.enable_daily_loss_limit and abs(self.tracker.total_pnl) >= self.config.max_daily_loss:
            self.halt(
                HaltReason.DAILY_LOSS_LIMIT,
                f"Daily PnL ${self.tracker.total_pnl:,.2f} reached limit ${self.config.max_daily_loss:,.2f}",
                now,
            )
            return True

        return False

    def _rollover(self, local: datetime, reason: str) -> None:
        previous = self.tracker
        if previous.trade_count > 0:
            self._history.append(previous)
            if len(self._history) > self.HISTORY_SIZE:
                self._history = self._history[-self.HISTORY_SIZE:]

        self.tracker = DailyRiskTracker(date=local.date())
        self.logger.info(
            f"Daily risk reset ({reason}): previous PnL ${previous.total_pnl:,.2f}, "
            f"{previous.trade_count} trades"
        )
        self._events.append(
            RiskEvent(RiskEventType.DAILY_RESET, local, reason, previous.to_dict())
        )

        if previous.is_halted:
            if previous.halt_reason is HaltReason.DAILY_LOSS_LIMIT:
                self.logger.info(f"Trading resumed after daily loss halt ({reason})")
                self._events.append(
                    RiskEvent(RiskEventType.RESUME, local, f"Auto resume: {reason}", self.tracker.to_dict())
                )
            else:
                self.tracker.is_halted = True
                self.tracker.halt_reason = previous.halt_reason
                self.tracker.halt_time = previous.halt_time

    def halt(
        self,
        reason: HaltReason = HaltReason.MANUAL,
        message: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        """Block new entries."""
        now = now or datetime.now(self.tz)
        tracker = self._ensure_tracker(to_session_time(now, self.tz))
        tracker.is_halted = True
        tracker.halt_reason = reason
        tracker.halt_time = now
        self.logger.critical(f"TRADING HALTED: {reason.value} {message}".rstrip())
        self._events.append(
            RiskEvent(RiskEventType.HALT, now, message or reason.value, tracker.to_dict())
        )

    def manual_resume(self) -> bool:
        """Clear any halt. Returns True when trading is allowed afterwards."""
        if not self.is_halted:
            return True

        reason = self.tracker.halt_reason
        self.tracker.is_halted = False
        self.tracker.halt_reason = None
        self.tracker.halt_time = None
        self.logger.info(f"Trading manually resumed (was {reason.value if reason else 'halted'})")
        self._events.append(
            RiskEvent(RiskEventType.RESUME, datetime.now(self.tz), "Manual resume", self.tracker.to_dict())
        )
        return True

    # =========================================================================
    # PNL
    # =========================================================================

    def update_realized_pnl(self, pnl: float, now: Optional[datetime] = None) -> None:
        """Record a closed trade."""
        now = now or datetime.now(self.tz)
        tracker = self._ensure_tracker(to_session_time(now, self.tz))

        tracker.realized_pnl += pnl
        tracker.trade_count += 1
        if pnl > 0:
            tracker.win_count += 1
            self._consecutive_wins += 1
            self._consecutive_losses = 0
        elif pnl < 0:
            tracker.loss_count += 1
            self._consecutive_losses += 1
            self._consecutive_wins = 0

        self._max_consecutive_losses = max(self._max_consecutive_losses, self._consecutive_losses)
        self._max_consecutive_wins = max(self._max_consecutive_wins, self._consecutive_wins)
        tracker.update_extremes()

        self.logger.debug(
            f"Realized ${pnl:,.2f}, daily total ${tracker.total_pnl:,.2f} ({tracker.trade_count} trades)"
        )

    def update_unrealized_pnl(self, positions: Iterable[BrokerPosition]) -> None:
        if self.tracker is None:
            return
        self.tracker.unrealized_pnl = sum(p.unrealized_pnl for p in positions)
        self.tracker.update_extremes()

    def validate_position_size(self, size: float, positions: Iterable[BrokerPosition]) -> bool:
        """Reject oversize requests and aggregate exposure past the cap."""
        max_size = self.position_config.max_position_size
        if size > max_size:
            self.logger.warning(f"Position size {size} exceeds max {max_size}")
            return False

        exposure = size + sum(p.quantity for p in positions)
        max_exposure = max_size * self.config.exposure_multiple
        if exposure > max_exposure:
            self.logger.warning(f"Exposure {exposure} would exceed max {max_exposure}")
            return False

        return True

    # =========================================================================
    # REPORTING
    # =========================================================================

    def get_statistics(self) -> Dict:
        days = self._history + ([self.tracker] if self.tracker else [])
        daily_pnls = np.array([d.total_pnl for d in days]) if days else np.zeros(0)
        trades = sum(d.trade_count for d in days)
        wins = sum(d.win_count for d in days)

        return {
            "days_tracked": len(days),
            "total_trades": trades,
            "total_wins": wins,
            "total_losses": sum(d.loss_count for d in days),
            "win_rate": wins / trades if trades else 0.0,
            "total_pnl": float(daily_pnls.sum()) if len(daily_pnls) else 0.0,
            "best_day": float(daily_pnls.max()) if len(daily_pnls) else 0.0,
            "worst_day": float(daily_pnls.min()) if len(daily_pnls) else 0.0,
            "consecutive_losses": self._consecutive_losses,
            "max_consecutive_losses": self._max_consecutive_losses,
            "max_consecutive_wins": self._max_consecutive_wins,
            "is_halted": self.is_halted,
        }

    def get_daily_summary(self) -> str:
        if self.tracker is None:
            return "No trading activity"
        t = self.tracker
        status = f"HALTED ({t.halt_reason.value})" if t.is_halted and t.halt_reason else "ACTIVE"
        limit = (
            f"${self.config.max_daily_loss:,.2f}" if self.config.enable_daily_loss_limit else "disabled"
        )
        return (
            f"{t.date.isoformat()} | PnL ${t.total_pnl:,.2f} "
            f"(realized ${t.realized_pnl:,.2f}, unrealized ${t.unrealized_pnl:,.2f}) | "
            f"Trades {t.trade_count} (W{t.win_count}/L{t.loss_count}) | "
            f"Limit {limit} | {status}"
        )
