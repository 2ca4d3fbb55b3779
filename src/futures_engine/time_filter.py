"""
Time Filter - Trading Window Gate

Up to three trading windows in HHMM session-local time. A window with
start > end wraps midnight (e.g. 1800-0400 is active at 0200).

TRANSITIONS (detected on every is_trading_allowed call):
- ENTER:  outside all windows -> inside one
- EXIT:   inside -> outside (raises the should-close flag)
- SWITCH: one window -> another

The should-close flag stays raised until the caller consumes it with
reset_close_flag(). Weekends are non-trading days.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import TimeFilterConfig


MINUTES_PER_DAY = 24 * 60


def hhmm_to_minutes(value: int) -> int:
    """930 -> 570."""
    return (value // 100) * 60 + value % 100


def to_session_time(ts: datetime, tz: tzinfo) -> datetime:
    """Convert to session-local wall clock. Naive times are treated as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz)


def is_trading_day(day: date) -> bool:
    """Monday to Friday."""
    return day.weekday() < 5


class TimeTransition(Enum):
    NONE = "NONE"
    ENTER = "ENTER"
    EXIT = "EXIT"
    SWITCH = "SWITCH"


@dataclass(frozen=True)
class TradingPeriod:
    """One trading window. Immutable after construction."""
    name: str
    enabled: bool
    start: int      # HHMM
    end: int        # HHMM, exclusive

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def is_time_in_period(self, t) -> bool:
        """t is a session-local datetime or time."""
        if not self.enabled:
            return False

        now = t.hour * 100 + t.minute
        if self.wraps_midnight:
            return now >= self.start or now < self.end
        return self.start <= now < self.end

    def minutes_until_start(self, t) -> int:
        """Minutes until the window opens, -1 if disabled or already open."""
        if not self.enabled or self.is_time_in_period(t):
            return -1
        current = t.hour * 60 + t.minute
        return (hhmm_to_minutes(self.start) - current) % MINUTES_PER_DAY

    def minutes_until_end(self, t) -> int:
        """Minutes until the window closes, -1 if not open."""
        if not self.is_time_in_period(t):
            return -1
        current = t.hour * 60 + t.minute
        return (hhmm_to_minutes(self.end) - current) % MINUTES_PER_DAY

    def __str__(self) -> str:
        return (
            f"{self.name}: {self.start // 100:02d}:{self.start % 100:02d}-"
            f"{self.end // 100:02d}:{self.end % 100:02d} "
            f"({'enabled' if self.enabled else 'disabled'})"
        )


class TimeFilter:
    """
    Multi-window trading time filter.

    Call is_trading_allowed() once per closed bar; tick handlers only
    read should_close_positions.
    """

    def __init__(
        self,
        config: TimeFilterConfig,
        timezone_name: str = "America/New_York",
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tz = ZoneInfo(timezone_name)
        self.logger = logger or logging.getLogger(__name__)

        self.periods: Tuple[TradingPeriod, ...] = tuple(
            TradingPeriod(name, enabled, start, end)
            for name, enabled, start, end in config.period_specs()
        )

        # Transition state
        self._was_in_period = False
        self._active_period: Optional[TradingPeriod] = None
        self._last_transition = TimeTransition.NONE
        self._last_transition_time: Optional[datetime] = None
        self._last_check: Optional[datetime] = None

        # Close flag
        self._should_close = False
        self._exit_reason = ""

        self._log_initialization()

    def _log_initialization(self) -> None:
        self.logger.info("Time filter initialized with periods:")
        for period in self.periods:
            if period.enabled:
                self.logger.info(f"  {period}")
        if not self.has_enabled_periods():
            self.logger.error("No trading periods enabled - engine will not trade")

    @property
    def should_close_positions(self) -> bool:
        return self._should_close

    @property
    def exit_reason(self) -> str:
        return self._exit_reason

    @property
    def active_period(self) -> Optional[TradingPeriod]:
        return self._active_period

    @property
    def last_transition(self) -> TimeTransition:
        return self._last_transition

    def has_enabled_periods(self) -> bool:
        return any(p.enabled for p in self.periods)

    def enabled_periods(self) -> List[TradingPeriod]:
        return [p for p in self.periods if p.enabled]

    def to_local(self, ts: datetime) -> datetime:
        return to_session_time(ts, self.tz)

    def is_trading_allowed(self, now: datetime) -> bool:
        """Check the windows at `now` and record any transition."""
        local = self.to_local(now)
        self._last_check = local
        self._last_transition = TimeTransition.NONE

        if not is_trading_day(local.date()):
            if self._was_in_period:
                self._on_exit("Weekend/Holiday")
            self._was_in_period = False
            self._active_period = None
            return False

        active = next((p for p in self.periods if p.is_time_in_period(local)), None)
        self._handle_transition(active, local)
        return active is not None

    def _handle_transition(self, active: Optional[TradingPeriod], local: datetime) -> None:
        if active is not None and not self._was_in_period:
            self._last_transition = TimeTransition.ENTER
            self._last_transition_time = local
            self.logger.info(f"Entering trading period: {active.name} at {local:%H:%M:%S}")

        elif active is None and self._was_in_period:
            self._on_exit("Period ended")

        elif active is not None and self._active_period is not None and active.name != self._active_period.name:
            self._last_transition = TimeTransition.SWITCH
            self._last_transition_time = local
            self.logger.info(
                f"Switching from {self._active_period.name} to {active.name} at {local:%H:%M:%S}"
            )

        self._was_in_period = active is not None
        self._active_period = active

    def _on_exit(self, reason: str) -> None:
        name = self._active_period.name if self._active_period else "?"
        self._last_transition = TimeTransition.EXIT
        self.logger.info(f"Exiting trading period: {name} - Reason: {reason}")
        self._should_close = True
        self._exit_reason = reason

    def reset_close_flag(self) -> None:
        """Consume the should-close flag after positions were handled."""
        self._should_close = False
        self._exit_reason = ""

    def is_approaching_period_end(self, now: datetime, minutes: Optional[int] = None) -> bool:
        """True within `minutes` of the active window's end."""
        if minutes is None:
            minutes = self.config.approaching_end_minutes
        if not self._was_in_period or self._active_period is None:
            return False
        remaining = self._active_period.minutes_until_end(self.to_local(now))
        return 0 <= remaining <= minutes

    def has_recently_entered_period(self, now: datetime, minutes: int) -> bool:
        """True within `minutes` of the last ENTER/SWITCH."""
        if not self._was_in_period or self._last_transition_time is None:
            return False
        elapsed = (self.to_local(now) - self._last_transition_time).total_seconds() / 60
        return 0 <= elapsed <= minutes

    def get_current_status(self, now: Optional[datetime] = None) -> str:
        """Human-readable window status."""
        if not self.has_enabled_periods():
            return "No trading periods enabled"

        local = self.to_local(now) if now is not None else self._last_check
        if local is None:
            return "Not evaluated yet"

        if self._was_in_period and self._active_period is not None:
            remaining = self._active_period.minutes_until_end(local)
            return f"In {self._active_period.name}, {remaining} minutes remaining"

        upcoming = [
            (p.minutes_until_start(local), p) for p in self.enabled_periods()
            if p.minutes_until_start(local) >= 0
        ]
        if upcoming:
            minutes, period = min(upcoming, key=lambda item: item[0])
            return f"Outside trading hours. Next period: {period.name} in {minutes} minutes"
        return "Outside trading hours"

    def get_status_summary(self) -> Dict:
        return {
            "in_trading_period": self._was_in_period,
            "active_period": self._active_period.name if self._active_period else None,
            "last_transition": self._last_transition.value,
            "should_close_positions": self._should_close,
            "exit_reason": self._exit_reason,
            "periods": [str(p) for p in self.periods],
        }
