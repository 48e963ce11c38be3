"""
Recurring occurrence projection.

A pattern is an interval (everyday / weekly / monthly) plus its anchor: the
weekday for weekly patterns, the day of month for monthly ones.

Monthly anchors past the end of a shorter month are clamped to that month's
last day: a pattern anchored on the 31st fires on 30 April and 28/29 February.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Optional

from slotrent.core.exceptions import ValidationError
from slotrent.models.subscription import RecurrenceInterval

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@dataclass(frozen=True)
class RecurrencePattern:
    interval: RecurrenceInterval
    day_of_week: Optional[int] = None   # 0 = Monday
    day_of_month: Optional[int] = None  # 1..31

    def __post_init__(self):
        if self.interval == RecurrenceInterval.WEEKLY and self.day_of_week not in range(7):
            raise ValidationError("Weekly recurrence requires a weekday anchor (0-6)")
        if self.interval == RecurrenceInterval.MONTHLY and self.day_of_month not in range(1, 32):
            raise ValidationError("Monthly recurrence requires a day-of-month anchor (1-31)")

    @classmethod
    def anchored_on(cls, interval: RecurrenceInterval, start: date) -> "RecurrencePattern":
        """Pattern whose anchor is taken from the first occurrence date."""
        interval = RecurrenceInterval(interval)
        if interval == RecurrenceInterval.WEEKLY:
            return cls(interval, day_of_week=start.weekday())
        if interval == RecurrenceInterval.MONTHLY:
            return cls(interval, day_of_month=start.day)
        return cls(interval)

    @classmethod
    def from_subscription(cls, subscription) -> "RecurrencePattern":
        return cls(
            RecurrenceInterval(subscription.interval),
            day_of_week=subscription.day_of_week,
            day_of_month=subscription.day_of_month,
        )

    @property
    def anchor_label(self) -> Optional[str]:
        if self.interval == RecurrenceInterval.WEEKLY:
            return WEEKDAY_NAMES[self.day_of_week]
        if self.interval == RecurrenceInterval.MONTHLY:
            return str(self.day_of_month)
        return None


def parse_weekday(value) -> int:
    """Accept 0-6 or a weekday name ('Monday', 'mon')."""
    if isinstance(value, int):
        if value in range(7):
            return value
        raise ValidationError(f"Invalid weekday: {value}")
    name = str(value).strip().lower()
    for index, full in enumerate(WEEKDAY_NAMES):
        if full.lower() == name or full[:3].lower() == name:
            return index
    raise ValidationError(f"Invalid weekday: '{value}'")


def _month_anchor(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def is_occurrence(day: date, pattern: RecurrencePattern) -> bool:
    if pattern.interval == RecurrenceInterval.EVERYDAY:
        return True
    if pattern.interval == RecurrenceInterval.WEEKLY:
        return day.weekday() == pattern.day_of_week
    return day == _month_anchor(day.year, day.month, pattern.day_of_month)


def _add_month(day: date, day_of_month: int) -> date:
    year, month = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
    return _month_anchor(year, month, day_of_month)


def next_occurrence(from_date: date, pattern: RecurrencePattern) -> date:
    """First occurrence strictly after ``from_date``."""
    if pattern.interval == RecurrenceInterval.EVERYDAY:
        return from_date + timedelta(days=1)

    if pattern.interval == RecurrenceInterval.WEEKLY:
        # On-pattern from_date lands exactly seven days later
        candidate = from_date + timedelta(days=1)
        return candidate + timedelta(days=(pattern.day_of_week - candidate.weekday()) % 7)

    candidate = _month_anchor(from_date.year, from_date.month, pattern.day_of_month)
    while candidate <= from_date:
        candidate = _add_month(candidate, pattern.day_of_month)
    return candidate


def occurrences_between(pattern: RecurrencePattern, start: date, end: date) -> Iterator[date]:
    """Occurrence dates in the inclusive range [start, end]."""
    current = start if is_occurrence(start, pattern) else next_occurrence(start, pattern)
    while current <= end:
        yield current
        current = next_occurrence(current, pattern)
