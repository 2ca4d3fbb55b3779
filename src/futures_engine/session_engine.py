"""
Session Tracker - Rolling Session Extremes

Tracks running high/low of three recurring session windows and picks
take-profit targets from them.

SESSION DEFINITIONS (session-local, [start, end)):
- Prior session: 09:30 - 17:00
- Overnight:     18:00 - 04:00 (wraps midnight)
- Pre-open:      04:00 - 09:30

ROLLOVER:
- The trading date advances when a bar at or after the prior-session
  start lands on a new local date
- Valid live sessions are archived (newest last, 30 deep), then all
  three are cleared before the bar is applied

TAKE PROFIT:
- Long: nearest session high above price at least min distance away,
  else the next nearest, else price + alternate offset
- Short: mirror logic with lows below price
- Live levels first; archived sessions (newest first) fill in when
  fewer than 3 highs or lows are available
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import InstrumentConfig, SessionConfig
from .models import Bar, Side
from .time_filter import hhmm_to_minutes, to_session_time


class SessionType(Enum):
    PRIOR_SESSION = "PRIOR_SESSION"
    OVERNIGHT = "OVERNIGHT"
    PRE_OPEN = "PRE_OPEN"


@dataclass(frozen=True)
class SessionWindow:
    """Half-open window in minutes of the session-local day."""
    session_type: SessionType
    start: int
    end: int

    @classmethod
    def from_hhmm(cls, session_type: SessionType, start: int, end: int) -> "SessionWindow":
        return cls(session_type, hhmm_to_minutes(start), hhmm_to_minutes(end))

    def contains(self, minute: int) -> bool:
        if self.start <= self.end:
            return self.start <= minute < self.end
        return minute >= self.start or minute < self.end


@dataclass
class TradingSession:
    """Running extremes of one session. high/low are None until a bar lands."""
    session_type: SessionType
    trading_date: Optional[date] = None
    start: Optional[datetime] = None      # First bar, session-local
    end: Optional[datetime] = None        # Latest bar, session-local
    high: Optional[float] = None
    low: Optional[float] = None
    bar_count: int = 0

    @property
    def is_valid(self) -> bool:
        return self.high is not None and self.low is not None

    def update(self, bar: Bar, local_time: datetime) -> None:
        if self.start is None:
            self.start = local_time
        self.end = local_time
        self.high = bar.high if self.high is None else max(self.high, bar.high)
        self.low = bar.low if self.low is None else min(self.low, bar.low)
        self.bar_count += 1

    def to_dict(self) -> dict:
        return {
            "type": self.session_type.value,
            "trading_date": self.trading_date.isoformat() if self.trading_date else None,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "high": self.high,
            "low": self.low,
            "bar_count": self.bar_count,
            "valid": self.is_valid,
        }


class SessionTracker:
    """
    Maintains the three live sessions plus a bounded archive.

    Only process_bar mutates session state.
    """

    def __init__(
        self,
        config: SessionConfig,
        instrument: InstrumentConfig,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.tick_size = instrument.tick_size
        self.tz = ZoneInfo(instrument.timezone)
        self.logger = logger or logging.getLogger(__name__)

        self.windows: Tuple[SessionWindow, ...] = (
            SessionWindow.from_hhmm(SessionType.PRIOR_SESSION, config.prior_session_start, config.prior_session_end),
            SessionWindow.from_hhmm(SessionType.OVERNIGHT, config.overnight_start, config.overnight_end),
            SessionWindow.from_hhmm(SessionType.PRE_OPEN, config.pre_open_start, config.pre_open_end),
        )
        self._reset_minute = hhmm_to_minutes(config.prior_session_start)

        self.sessions: Dict[SessionType, TradingSession] = {}
        self._history: List[TradingSession] = []
        self._trading_date: Optional[date] = None
        self._reset_sessions()

        # Statistics
        self.last_tp_source = ""
        self._bars_processed = 0
        self._invalid_bars = 0
        self._rollovers = 0

    @property
    def history(self) -> List[TradingSession]:
        """Archived sessions, oldest first."""
        return list(self._history)

    @property
    def trading_date(self) -> Optional[date]:
        return self._trading_date

    def to_local(self, ts: datetime) -> datetime:
        return to_session_time(ts, self.tz)

    def _reset_sessions(self) -> None:
        self.sessions = {
            w.session_type: TradingSession(w.session_type, trading_date=self._trading_date)
            for w in self.windows
        }

    def _window_for(self, minute: int) -> Optional[SessionWindow]:
        for window in self.windows:
            if window.contains(minute):
                return window
        return None

    def process_bar(self, bar: Bar) -> Optional[SessionType]:
        """
        Apply a closed bar. Returns the session it updated, or None when
        the bar is invalid or falls outside every window.
        """
        if not bar.is_valid:
            self._invalid_bars += 1
            self.logger.error(f"Skipping invalid bar at {bar.time}: high={bar.high} low={bar.low}")
            return None

        local = self.to_local(bar.time)
        minute = local.hour * 60 + local.minute

        if self._trading_date is None:
            if minute >= self._reset_minute:
                self._trading_date = local.date()
            else:
                self._trading_date = local.date() - timedelta(days=1)
            self._reset_sessions()
        elif minute >= self._reset_minute and local.date() != self._trading_date:
            self._roll_sessions(local.date())

        self._bars_processed += 1

        window = self._window_for(minute)
        if window is None:
            return None

        self.sessions[window.session_type].update(bar, local)
        return window.session_type

    def process_history(self, bars: Iterable[Bar]) -> int:
        """Bootstrap from historical bars. Returns the number applied."""
        applied = 0
        for bar in bars:
            if self.process_bar(bar) is not None:
                applied += 1
        self.logger.info(
            f"Session history loaded: {applied} bars, {len(self._history)} archived sessions"
        )
        return applied

    def _roll_sessions(self, new_date: date) -> None:
        archived = 0
        for window in self.windows:
            session = self.sessions[window.session_type]
            if session.is_valid:
                self._history.append(session)
                archived += 1

        if len(self._history) > self.config.history_size:
            self._history = self._history[-self.config.history_size:]

        self.logger.debug(
            f"Session rollover {self._trading_date} -> {new_date}: archived {archived}"
        )
        self._trading_date = new_date
        self._rollovers += 1
        self._reset_sessions()

    # =========================================================================
    # LEVELS
    # =========================================================================

    def _gather_levels(self) -> Tuple[List[Tuple[float, str]], List[Tuple[float, str]]]:
        highs: List[Tuple[float, str]] = []
        lows: List[Tuple[float, str]] = []

        for window in self.windows:
            session = self.sessions[window.session_type]
            if session.is_valid:
                highs.append((session.high, session.session_type.value))
                lows.append((session.low, session.session_type.value))

        need = self.config.min_levels
        if len(highs) >= need and len(lows) >= need:
            return highs, lows

        recent = list(reversed(self._history))[:self.config.fallback_sessions]
        for session in recent:
            if len(highs) >= need and len(lows) >= need:
                break
            label = f"ARCHIVE_{session.session_type.value}"
            if len(highs) < need and all(session.high != h for h, _ in highs):
                highs.append((session.high, label))
            if len(lows) < need and all(session.low != l for l, _ in lows):
                lows.append((session.low, label))

        return highs, lows

    def select_take_profit(self, price: float, side: Side) -> float:
        """Take-profit level for a new position entered at `price`."""
        highs, lows = self._gather_levels()
        min_distance = self.config.min_tp_distance_ticks * self.tick_size

        if side is Side.BUY:
            candidates = sorted((lvl for lvl in highs if lvl[0] > price), key=lambda lvl: lvl[0])
            alternate = price + self.config.alt_take_profit_ticks * self.tick_size
        else:
            candidates = sorted((lvl for lvl in lows if lvl[0] < price), key=lambda lvl: -lvl[0])
            alternate = price - self.config.alt_take_profit_ticks * self.tick_size

        for level, source in candidates[:2]:
            if abs(level - price) >= min_distance:
                self.last_tp_source = source
                return level

        self.last_tp_source = "ALTERNATE"
        return alternate

    def closest_levels(self, price: float) -> Tuple[Optional[float], Optional[float]]:
        """(nearest live high above price, nearest live low below price)."""
        valid = [s for s in self.sessions.values() if s.is_valid]
        above = [s.high for s in valid if s.high > price]
        below = [s.low for s in valid if s.low < price]
        return (min(above) if above else None, max(below) if below else None)

    def has_valid_session_data(self) -> bool:
        return any(s.is_valid for s in self.sessions.values()) or bool(self._history)

    def log_session_states(self) -> None:
        for session in self.sessions.values():
            if session.is_valid:
                self.logger.info(
                    f"{session.session_type.value}: H={session.high:.2f} L={session.low:.2f} "
                    f"bars={session.bar_count}"
                )
            else:
                self.logger.info(f"{session.session_type.value}: no data")
        self.logger.info(f"Archived sessions: {len(self._history)}")

    def get_status_summary(self) -> Dict:
        return {
            "trading_date": self._trading_date.isoformat() if self._trading_date else None,
            "sessions": {t.value: s.to_dict() for t, s in self.sessions.items()},
            "archived_sessions": len(self._history),
            "bars_processed": self._bars_processed,
            "invalid_bars": self._invalid_bars,
            "rollovers": self._rollovers,
            "last_tp_source": self.last_tp_source,
        }

    def reset(self) -> None:
        self._history.clear()
        self._trading_date = None
        self._reset_sessions()
        self.last_tp_source = ""
        self._bars_processed = 0
        self._invalid_bars = 0
        self._rollovers = 0
