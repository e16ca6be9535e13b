"""
Clock and time-window helpers.

Pure functions answering "is this dose upcoming, current, missed" relative
to a caller-supplied ``now``. All datetimes are naive local wall-clock
instants. Nothing here reads the system clock except parse_clock_time's
dateutil fallback, which only uses it as a parsing default.
"""

import re
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Union

from pillwatch.errors import ConfigurationError


ELIGIBILITY_WINDOW = timedelta(hours=2)
FOLLOW_UP_AFTER = timedelta(minutes=30)


class DoseTimeStatus(Enum):
    TAKEN = "taken"
    SKIPPED = "skipped"
    UPCOMING = "upcoming"
    CURRENT = "current"
    MISSED = "missed"


def start_of_day(moment: Union[datetime, date]) -> datetime:
    return datetime(moment.year, moment.month, moment.day)


def is_same_day(a: datetime, b: datetime) -> bool:
    return a.date() == b.date()


def combine(day: date, clock: time) -> datetime:
    """Local wall-clock instant for a calendar day and a time of day."""
    return datetime(day.year, day.month, day.day, clock.hour, clock.minute)


def elapsed_since(scheduled_at: datetime, now: datetime) -> timedelta:
    """Positive once the scheduled moment has passed."""
    return now - scheduled_at


def is_upcoming(scheduled_at: datetime, now: datetime) -> bool:
    return scheduled_at > now


def is_due(scheduled_at: datetime, now: datetime,
           window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    """Scheduled moment reached and not yet past the window."""
    elapsed = elapsed_since(scheduled_at, now)
    return timedelta(0) <= elapsed <= window


def is_overdue(scheduled_at: datetime, now: datetime,
               window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    return elapsed_since(scheduled_at, now) > window


def is_within_window(scheduled_at: datetime, now: datetime,
                     window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    """Strictly inside scheduled_at +/- window."""
    delta = scheduled_at - now
    return -window < delta < window


def window_opens_at(scheduled_at: datetime,
                    window: timedelta = ELIGIBILITY_WINDOW) -> datetime:
    return scheduled_at - window


def is_eligible(dose, now: datetime, window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    """Dose may be marked taken via quick action right now."""
    return dose.is_open and is_within_window(dose.scheduled_at, now, window)


def is_missed(dose, now: datetime, window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    return dose.is_open and is_overdue(dose.scheduled_at, now, window)


def needs_follow_up(dose, now: datetime,
                    window: timedelta = ELIGIBILITY_WINDOW) -> bool:
    """Open, more than 30 minutes late and still inside the window."""
    if not dose.is_open:
        return False
    elapsed = elapsed_since(dose.scheduled_at, now)
    return FOLLOW_UP_AFTER < elapsed < window


def dose_time_status(dose, now: datetime,
                     window: timedelta = ELIGIBILITY_WINDOW) -> DoseTimeStatus:
    if dose.is_taken:
        return DoseTimeStatus.TAKEN
    if dose.is_skipped:
        return DoseTimeStatus.SKIPPED
    delta = dose.scheduled_at - now
    if delta > window:
        return DoseTimeStatus.UPCOMING
    if delta > -window:
        return DoseTimeStatus.CURRENT
    return DoseTimeStatus.MISSED


# ----------------------------------------------------------------------
# Clock-time parsing
# ----------------------------------------------------------------------

_CLOCK_RE = re.compile(
    r"^(\d{1,2})(?:[:.](\d{2}))?\s*(am|pm|a\.m\.?|p\.m\.?)?$", re.I
)


def parse_clock_time(value: Union[str, time, datetime]) -> time:
    """Parse a time of day: "08:00", "8 PM", "8:30am", time or datetime.

    Seconds are dropped; a dose slot has minute resolution.
    """
    if isinstance(value, datetime):
        return time(value.hour, value.minute)
    if isinstance(value, time):
        return time(value.hour, value.minute)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Invalid clock time: {value!r}")

    text = value.strip().lower()
    if text == "noon":
        return time(12, 0)
    if text == "midnight":
        return time(0, 0)

    parsed = _parse_simple(text)
    if parsed is None:
        parsed = _parse_with_dateutil(text)
    if parsed is None:
        raise ConfigurationError(f"Invalid clock time: {value!r}")
    return parsed


def _parse_simple(text: str) -> Optional[time]:
    m = _CLOCK_RE.match(text)
    if not m:
        return None
    hour = int(m.group(1))
    minute = int(m.group(2) or 0)
    ampm = (m.group(3) or "").replace(".", "")
    if ampm:
        if not 1 <= hour <= 12:
            return None
        if ampm == "pm" and hour < 12:
            hour += 12
        elif ampm == "am" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def _parse_with_dateutil(text: str) -> Optional[time]:
    from dateutil import parser as dateutil_parser
    try:
        result = dateutil_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    return time(result.hour, result.minute)
