"""Tests for timer step wake-time computation."""
from datetime import datetime, timedelta, timezone

import pytest

from journeys.errors import StepConfigurationError
from journeys.timers import delay_due_at, next_window_instant, wait_until_deadline
from models.schemas import BranchingMetadata, DelayDuration, TimeDelayMetadata, TimeWindowMetadata


def utc(day, hour, minute=0):
    # March 2024: the 4th is a Monday
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


def window(start="09:00", end="17:00", days=(), offset=0):
    return TimeWindowMetadata(from_time=start, to_time=end, days_of_week=list(days),
                              timezone_offset_minutes=offset)


class TestDelay:
    def test_due_at(self):
        meta = TimeDelayMetadata(delay=DelayDuration(days=1, hours=2, minutes=3, seconds=4))
        assert delay_due_at(meta, utc(5, 12)) == utc(6, 14, 3) + timedelta(seconds=4)

    def test_zero_delay(self):
        assert delay_due_at(TimeDelayMetadata(), utc(5, 12)) == utc(5, 12)


class TestTimeWindow:
    def test_inside_window_is_now(self):
        now = utc(5, 12, 30)
        assert next_window_instant(window(), now) == now

    def test_before_window_opens_today(self):
        assert next_window_instant(window(), utc(5, 7)) == utc(5, 9)

    def test_after_window_opens_tomorrow(self):
        assert next_window_instant(window(), utc(5, 17)) == utc(6, 9)

    def test_overnight_window(self):
        meta = window("22:00", "02:00")
        assert next_window_instant(meta, utc(6, 1)) == utc(6, 1)
        assert next_window_instant(meta, utc(6, 3)) == utc(6, 22)

    def test_days_of_week(self):
        # Tuesday afternoon, window only on Mondays and Fridays
        assert next_window_instant(window(days=(0, 4)), utc(5, 18)) == utc(8, 9)

    def test_offset_shifts_to_local_time(self):
        # 09:00 at UTC+2 is 07:00 UTC
        assert next_window_instant(window(offset=120), utc(5, 6)) == utc(5, 7)
        assert next_window_instant(window(offset=120), utc(5, 7, 30)) == utc(5, 7, 30)

    def test_equal_bounds_is_all_day(self):
        now = utc(5, 3)
        assert next_window_instant(window("00:00", "00:00"), now) == now

    def test_invalid_day(self):
        with pytest.raises(StepConfigurationError):
            next_window_instant(window(days=(7,)), utc(5, 12), "w1")

    def test_invalid_time(self):
        with pytest.raises(StepConfigurationError) as exc:
            next_window_instant(window(start="nine"), utc(5, 12), "w1")
        assert exc.value.step_id == "w1"


class TestWaitUntilDeadline:
    def test_deadline(self):
        meta = BranchingMetadata(timeout_seconds=3600)
        assert wait_until_deadline(meta, utc(5, 12)) == utc(5, 13)

    def test_no_timeout(self):
        assert wait_until_deadline(BranchingMetadata(), utc(5, 12)) is None
