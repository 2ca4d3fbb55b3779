"""
Tests for the session tracker and take-profit selection.
"""

import pytest
from datetime import datetime
from zoneinfo import ZoneInfo

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.futures_engine.config import InstrumentConfig, SessionConfig
from src.futures_engine.models import Bar, Side
from src.futures_engine.session_engine import SessionTracker, SessionType, SessionWindow


NY = ZoneInfo("America/New_York")


def ny(day, hour, minute=0):
    return datetime(2024, 1, day, hour, minute, tzinfo=NY)


def make_bar(time, high, low):
    mid = (high + low) / 2
    return Bar(time=time, open=mid, high=high, low=low, close=mid, volume=100.0)


@pytest.fixture
def tracker():
    return SessionTracker(SessionConfig(), InstrumentConfig())


@pytest.fixture
def full_day(tracker):
    """Wednesday prior session, overnight and Thursday pre-open."""
    tracker.process_bar(make_bar(ny(10, 10), 4510.0, 4500.0))
    tracker.process_bar(make_bar(ny(10, 19), 4520.0, 4490.0))
    tracker.process_bar(make_bar(ny(11, 5), 4530.0, 4480.0))
    return tracker


class TestSessionWindows:

    def test_regular_window(self):
        window = SessionWindow.from_hhmm(SessionType.PRE_OPEN, 400, 930)
        assert window.contains(4 * 60)
        assert window.contains(9 * 60 + 29)
        assert not window.contains(9 * 60 + 30)

    def test_wrapping_window(self):
        window = SessionWindow.from_hhmm(SessionType.OVERNIGHT, 1800, 400)
        assert window.contains(2 * 60)
        assert window.contains(18 * 60)
        assert not window.contains(4 * 60)
        assert not window.contains(12 * 60)

    def test_bars_land_in_their_session(self, full_day):
        sessions = full_day.sessions
        assert sessions[SessionType.PRIOR_SESSION].high == 4510.0
        assert sessions[SessionType.OVERNIGHT].low == 4490.0
        assert sessions[SessionType.PRE_OPEN].high == 4530.0

    def test_bar_outside_windows_updates_nothing(self, tracker):
        assert tracker.process_bar(make_bar(ny(10, 17, 30), 4600.0, 4400.0)) is None
        assert not any(s.is_valid for s in tracker.sessions.values())

    def test_invalid_bar_skipped(self, tracker):
        assert tracker.process_bar(make_bar(ny(10, 10), 0.0, 0.0)) is None
        assert tracker.get_status_summary()["invalid_bars"] == 1

    def test_naive_time_is_utc(self, tracker):
        # 15:00 UTC = 10:00 New York in January
        result = tracker.process_bar(make_bar(datetime(2024, 1, 10, 15, 0), 4510.0, 4500.0))
        assert result is SessionType.PRIOR_SESSION


class TestSessionReset:

    def test_new_date_clears_all_sessions(self, full_day):
        full_day.process_bar(make_bar(ny(11, 9, 30), 4503.5, 4502.0))

        sessions = full_day.sessions
        assert not sessions[SessionType.OVERNIGHT].is_valid
        assert not sessions[SessionType.PRE_OPEN].is_valid
        prior = sessions[SessionType.PRIOR_SESSION]
        assert prior.high == 4503.5
        assert prior.bar_count == 1
        assert len(full_day.history) == 3
        assert full_day.trading_date == ny(11, 9, 30).date()

    def test_pre_open_does_not_roll(self, full_day):
        assert full_day.sessions[SessionType.PRIOR_SESSION].is_valid
        assert len(full_day.history) == 0

    def test_process_history(self, tracker):
        bars = [
            make_bar(ny(10, 10), 4510.0, 4500.0),
            make_bar(ny(10, 17, 30), 4600.0, 4400.0),
            make_bar(ny(10, 19), 4520.0, 4490.0),
        ]
        assert not tracker.has_valid_session_data()
        assert tracker.process_history(bars) == 2
        assert tracker.has_valid_session_data()

    def test_history_is_bounded(self, tracker):
        for day in range(1, 31):
            tracker.process_bar(make_bar(datetime(2024, 3, day, 10, tzinfo=NY), 4510.0, 4500.0))
            tracker.process_bar(make_bar(datetime(2024, 3, day, 19, tzinfo=NY), 4510.0, 4500.0))
        assert len(tracker.history) == SessionConfig().history_size


class TestTakeProfit:

    def test_nearest_high_for_long(self, full_day):
        assert full_day.select_take_profit(4505.0, Side.BUY) == 4510.0

    def test_second_nearest_when_nearest_too_close(self, full_day):
        assert full_day.select_take_profit(4509.0, Side.BUY) == 4520.0

    def test_nearest_low_for_short(self, full_day):
        assert full_day.select_take_profit(4505.0, Side.SELL) == 4500.0

    def test_alternate_when_no_level_beyond_price(self, full_day):
        assert full_day.select_take_profit(4540.0, Side.BUY) == pytest.approx(4543.0)
        assert full_day.last_tp_source == "ALTERNATE"

    def test_alternate_when_two_nearest_too_close(self, tracker):
        tracker.process_bar(make_bar(ny(10, 10), 4510.0, 4500.0))
        tracker.process_bar(make_bar(ny(10, 19), 4511.0, 4500.0))
        assert tracker.select_take_profit(4509.5, Side.BUY) == pytest.approx(4512.5)

    def test_no_data_returns_alternate(self, tracker):
        assert tracker.select_take_profit(4500.0, Side.SELL) == pytest.approx(4497.0)

    def test_archive_fills_missing_levels(self, full_day):
        full_day.process_bar(make_bar(ny(11, 9, 30), 4503.5, 4502.0))
        # Live 4503.5 too close; newest archived highs are 4530 (pre-open), 4520 (overnight)
        assert full_day.select_take_profit(4503.0, Side.BUY) == 4520.0
        assert full_day.last_tp_source == "ARCHIVE_OVERNIGHT"

    def test_closest_levels(self, full_day):
        assert full_day.closest_levels(4505.0) == (4510.0, 4500.0)
        assert full_day.closest_levels(4600.0) == (None, 4500.0)
