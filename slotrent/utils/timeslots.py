import re
from datetime import date, datetime, time, timedelta
from typing import Union

from slotrent.core.exceptions import ValidationError

MINUTES_PER_DAY = 24 * 60

_TIME_RE = re.compile(
    r"^\s*(?P<hour>\d{1,2}):(?P<minute>\d{2})\s*(?P<meridiem>[ap]\.?m\.?)?\s*$",
    re.IGNORECASE,
)


def parse_time(value: Union[str, int]) -> int:
    """
    Convert a time string into a minute-of-day integer.

    Accepts "H:MM", "HH:MM" (24-hour) and "H:MMAM" / "H:MM pm" (12-hour,
    case-insensitive, optional space before the meridiem). "24:00" is allowed
    as an end-of-day closing time.

      "9:00"    -> 540
      "14:30"   -> 870
      "12:00AM" -> 0
      "12:00PM" -> 720
      "2:30 pm" -> 870
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid time: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= MINUTES_PER_DAY:
            return value
        raise ValidationError(f"Minute of day out of range: {value}")
    if not isinstance(value, str):
        raise ValidationError(f"Invalid time: {value!r}")

    match = _TIME_RE.match(value)
    if not match:
        raise ValidationError(f"Invalid time format: '{value}'")

    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    meridiem = match.group("meridiem")

    if minute > 59:
        raise ValidationError(f"Invalid minutes in time: '{value}'")

    if meridiem:
        if not 1 <= hour <= 12:
            raise ValidationError(f"Invalid 12-hour time: '{value}'")
        is_pm = meridiem.lower().startswith("p")
        if is_pm and hour != 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0
    elif hour > 24 or (hour == 24 and minute != 0):
        raise ValidationError(f"Invalid 24-hour time: '{value}'")

    return hour * 60 + minute


def format_time(minute_of_day: int) -> str:
    """Render a minute-of-day as 12-hour display text, e.g. 540 -> '9:00AM'."""
    minute_of_day = minute_of_day % MINUTES_PER_DAY
    hour, minute = divmod(minute_of_day, 60)
    period = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d}{period}"


def slot_label(start_minute: int, end_minute: int) -> str:
    return f"{format_time(start_minute)} - {format_time(end_minute)}"


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """
    Interval intersection with start inclusive, end exclusive.

    Back-to-back windows (10:00-11:00 and 11:00-12:00) do not overlap.
    """
    return a_start < b_end and b_start < a_end


def to_instant(day: date, minute_of_day: int) -> datetime:
    """Naive local datetime for a calendar day plus minute-of-day."""
    return datetime.combine(day, time.min) + timedelta(minutes=minute_of_day)


def hours_until(day: date, minute_of_day: int, now: datetime) -> float:
    return (to_instant(day, minute_of_day) - now).total_seconds() / 3600
