"""
Wake-time computation for timer steps (TimeDelay, TimeWindow, WaitUntilBranch).
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from journeys.errors import QuietHoursConfigurationError, StepConfigurationError
from journeys.quiet_hours import parse_hhmm
from models.schemas import BranchingMetadata, TimeDelayMetadata, TimeWindowMetadata


def delay_due_at(meta: TimeDelayMetadata, entered_at: datetime) -> datetime:
    return entered_at + meta.delay.to_timedelta()


def _clock(value: str, step_id: str) -> time:
    try:
        minutes = parse_hhmm(value)
    except QuietHoursConfigurationError as e:
        raise StepConfigurationError(str(e), step_id) from e
    return time(minutes // 60, minutes % 60)


def next_window_instant(meta: TimeWindowMetadata, now: datetime, step_id: str = "") -> datetime:
    """
    `now` if it falls inside the window, else the next opening. The window is
    local wall-clock time at timezone_offset_minutes; days_of_week (0 = Monday)
    restricts the local day the window opens on. from == to spans the whole day.
    """
    opens, closes = _clock(meta.from_time, step_id), _clock(meta.to_time, step_id)
    offset = timedelta(minutes=meta.timezone_offset_minutes)
    local_now = now.astimezone(timezone.utc) + offset
    allowed = set(meta.days_of_week)
    if any(d < 0 or d > 6 for d in allowed):
        raise StepConfigurationError(f"Invalid days_of_week {sorted(allowed)}", step_id)

    # Start a day early so a window that opened yesterday and wraps past midnight is seen
    first: date = local_now.date() - timedelta(days=1)
    for i in range(9):
        day = first + timedelta(days=i)
        if allowed and day.weekday() not in allowed:
            continue
        start = datetime.combine(day, opens, tzinfo=timezone.utc)
        end = datetime.combine(day, closes, tzinfo=timezone.utc)
        if end <= start:
            end += timedelta(days=1)
        if start <= local_now < end:
            return now
        if start > local_now:
            return start - offset
    raise StepConfigurationError("Time window never opens", step_id)


def wait_until_deadline(meta: BranchingMetadata, entered_at: datetime) -> Optional[datetime]:
    if meta.timeout_seconds is None:
        return None
    return entered_at + timedelta(seconds=meta.timeout_seconds)
