"""
Quiet Hours Evaluator — decides whether a journey may send right now.

The journey stores its quiet window in local wall-clock time together with a
UTC offset. Both ends are shifted to UTC and compared with the current UTC
time of day at minute resolution, so a window such as 22:00–06:00 wraps
across midnight.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from journeys.errors import QuietHoursConfigurationError
from models.schemas import QuietFallbackBehavior, QuietHoursSettings, SendDecision

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class QuietHoursResult:
    decision: Optional[SendDecision] = None   # None → sending is not suppressed
    requeue_time: Optional[datetime] = None

    @property
    def suppressed(self) -> bool:
        return self.decision is not None


NOT_QUIET = QuietHoursResult()


def parse_hhmm(value: str) -> int:
    """'HH:MM' → minutes after midnight."""
    try:
        hours, minutes = value.strip().split(":")
        h, m = int(hours), int(minutes)
    except (AttributeError, ValueError) as e:
        raise QuietHoursConfigurationError(f"Invalid time of day '{value}'") from e
    if not (0 <= h < 24 and 0 <= m < 60):
        raise QuietHoursConfigurationError(f"Invalid time of day '{value}'")
    return h * 60 + m


def local_to_utc_minutes(local_minutes: int, offset_minutes: int) -> int:
    return (local_minutes - offset_minutes) % MINUTES_PER_DAY


def is_within_window(start: int, end: int, current: int) -> bool:
    """Half-open [start, end) containment on a 24h clock. start == end is empty."""
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def next_occurrence(now: datetime, utc_minutes: int) -> datetime:
    """The given UTC time of day on now's date, pushed a day forward unless strictly after now."""
    candidate = now.replace(
        hour=utc_minutes // 60, minute=utc_minutes % 60, second=0, microsecond=0,
    )
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def evaluate_quiet_hours(settings: Optional[QuietHoursSettings], now: datetime) -> QuietHoursResult:
    if settings is None or not settings.enabled:
        return NOT_QUIET

    start = local_to_utc_minutes(parse_hhmm(settings.start_time), settings.timezone_offset_minutes)
    end = local_to_utc_minutes(parse_hhmm(settings.end_time), settings.timezone_offset_minutes)
    current = now.hour * 60 + now.minute

    if not is_within_window(start, end, current):
        return NOT_QUIET

    if settings.fallback_behavior == QuietFallbackBehavior.ABORT:
        return QuietHoursResult(decision=SendDecision.QUIET_ABORT)
    return QuietHoursResult(
        decision=SendDecision.QUIET_REQUEUE,
        requeue_time=next_occurrence(now, end),
    )
