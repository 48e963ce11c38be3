"""
Slot availability.

Slots are generated from a listing's opening minute to its closing minute in
steps of the requested duration. A slot is unavailable when it overlaps a
non-cancelled reservation or a projected recurring occurrence that has not
produced its reservation yet ("virtual" reservation).

Overlap math always uses the full slot end; ``display_end_minute`` is only a
visual buffer for owner turnover.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.core.exceptions import NotFoundError, ValidationError
from slotrent.models.listing import Listing
from slotrent.models.reservation import Reservation, ReservationStatus
from slotrent.models.subscription import RecurringSubscription, RecurrenceInterval, SubscriptionStatus
from slotrent.services.platform_settings import get_rules
from slotrent.services.recurrence import RecurrencePattern, is_occurrence, occurrences_between
from slotrent.utils.timeslots import format_time, overlaps, slot_label

logger = logging.getLogger(__name__)

ALLOWED_DURATIONS = (30, 60)

CAUSE_RESERVATION = "reservation"
CAUSE_RECURRING = "recurring"


@dataclass(frozen=True)
class BusyWindow:
    start_minute: int
    end_minute: int
    cause: str
    reservation_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    recurring_interval: Optional[str] = None


@dataclass
class SlotDescriptor:
    start_minute: int
    end_minute: int
    display_end_minute: int
    label: str
    available: bool
    cause: Optional[str] = None
    recurring_interval: Optional[str] = None

    @property
    def start_time(self) -> str:
        return format_time(self.start_minute)

    @property
    def end_time(self) -> str:
        return format_time(self.end_minute)


@dataclass
class DayAvailability:
    listing_id: UUID
    date: date
    duration: int
    slots: List[SlotDescriptor] = field(default_factory=list)

    @property
    def available_count(self) -> int:
        return sum(1 for slot in self.slots if slot.available)


@dataclass(frozen=True)
class AvailabilityCheck:
    available: bool
    reason: Optional[str] = None
    conflict_type: Optional[str] = None


@dataclass(frozen=True)
class RecurringConflict:
    reservation_id: UUID
    reservation_number: str
    date: date
    start_minute: int
    end_minute: int


# ---------------------------------------------------------------------------
# Busy windows
# ---------------------------------------------------------------------------


def _reservations_on(
    db: Session,
    listing_id: UUID,
    day: date,
    exclude_reservation_id: Optional[UUID] = None,
) -> List[Reservation]:
    query = db.query(Reservation).filter(
        Reservation.listing_id == listing_id,
        Reservation.date == day,
        Reservation.status != ReservationStatus.CANCELLED.value,
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)
    return query.all()


def _projecting_subscriptions(db: Session, listing_id: UUID) -> List[RecurringSubscription]:
    return (
        db.query(RecurringSubscription)
        .filter(
            RecurringSubscription.listing_id == listing_id,
            RecurringSubscription.status == SubscriptionStatus.ACTIVE.value,
            RecurringSubscription.cancel_at_period_end == False,
        )
        .all()
    )


def busy_windows(
    db: Session,
    listing_id: UUID,
    day: date,
    today: Optional[date] = None,
    exclude_reservation_id: Optional[UUID] = None,
    exclude_subscription_id: Optional[UUID] = None,
) -> List[BusyWindow]:
    """Real reservations plus virtual ones projected from active subscriptions."""
    today = today or date.today()
    horizon = today + timedelta(days=get_rules(db).max_advance_booking_days)

    reservations = _reservations_on(db, listing_id, day, exclude_reservation_id)
    windows = [
        BusyWindow(
            start_minute=r.start_minute,
            end_minute=r.end_minute,
            cause=CAUSE_RESERVATION,
            reservation_id=r.id,
            subscription_id=r.subscription_id,
        )
        for r in reservations
    ]

    if not today <= day <= horizon:
        return windows

    # Any reservation of the subscription on this date (even the excluded one)
    # means the occurrence has already materialised
    materialised = {
        sub_id
        for (sub_id,) in db.query(Reservation.subscription_id).filter(
            Reservation.listing_id == listing_id,
            Reservation.date == day,
            Reservation.subscription_id.isnot(None),
            Reservation.status != ReservationStatus.CANCELLED.value,
        )
    }

    for subscription in _projecting_subscriptions(db, listing_id):
        if subscription.id == exclude_subscription_id or subscription.id in materialised:
            continue
        if not is_occurrence(day, RecurrencePattern.from_subscription(subscription)):
            continue
        windows.append(
            BusyWindow(
                start_minute=subscription.start_minute,
                end_minute=subscription.end_minute,
                cause=CAUSE_RECURRING,
                subscription_id=subscription.id,
                recurring_interval=subscription.interval,
            )
        )
    return windows


def _first_overlap(windows: List[BusyWindow], start: int, end: int) -> Optional[BusyWindow]:
    # Direct reservations win over projections when both overlap
    hits = [w for w in windows if overlaps(start, end, w.start_minute, w.end_minute)]
    if not hits:
        return None
    hits.sort(key=lambda w: (w.cause != CAUSE_RESERVATION, w.start_minute))
    return hits[0]


# ---------------------------------------------------------------------------
# Slot listing
# ---------------------------------------------------------------------------


def generate_windows(opening_minute: int, closing_minute: int, duration: int):
    """Yield (start, end) pairs; the last slot must fully fit before closing."""
    current = opening_minute
    while current + duration <= closing_minute:
        yield current, current + duration
        current += duration


def get_slot_availability(
    db: Session,
    listing: Listing,
    day: date,
    duration: Optional[int] = None,
    today: Optional[date] = None,
) -> DayAvailability:
    duration = duration or listing.slot_minutes
    if duration not in ALLOWED_DURATIONS:
        raise ValidationError("Slot duration must be 30 or 60 minutes")

    windows = busy_windows(db, listing.id, day, today=today)
    buffer = settings.SLOT_DISPLAY_BUFFER_MINUTES

    result = DayAvailability(listing_id=listing.id, date=day, duration=duration)
    for start, end in generate_windows(listing.opening_minute, listing.closing_minute, duration):
        hit = _first_overlap(windows, start, end)
        display_end = end - buffer
        result.slots.append(
            SlotDescriptor(
                start_minute=start,
                end_minute=end,
                display_end_minute=display_end,
                label=slot_label(start, display_end),
                available=hit is None,
                cause=hit.cause if hit else None,
                recurring_interval=hit.recurring_interval if hit else None,
            )
        )
    return result


# ---------------------------------------------------------------------------
# Exact-window checks
# ---------------------------------------------------------------------------


def check_full_availability(
    db: Session,
    listing_id: UUID,
    day: date,
    start_minute: int,
    end_minute: int,
    exclude_reservation_id: Optional[UUID] = None,
    exclude_subscription_id: Optional[UUID] = None,
    today: Optional[date] = None,
) -> AvailabilityCheck:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise NotFoundError("Listing not found")

    if end_minute <= start_minute:
        return AvailabilityCheck(False, "End time must be after start time", "invalid_window")
    if start_minute < listing.opening_minute or end_minute > listing.closing_minute:
        return AvailabilityCheck(
            False,
            f"Requested time is outside operating hours "
            f"({format_time(listing.opening_minute)} - {format_time(listing.closing_minute)})",
            "outside_hours",
        )

    windows = busy_windows(
        db,
        listing_id,
        day,
        today=today,
        exclude_reservation_id=exclude_reservation_id,
        exclude_subscription_id=exclude_subscription_id,
    )
    hit = _first_overlap(windows, start_minute, end_minute)
    if hit is None:
        return AvailabilityCheck(True)

    if hit.cause == CAUSE_RECURRING:
        reason = (
            f"Time slot is reserved by a recurring {hit.recurring_interval} booking "
            f"({slot_label(hit.start_minute, hit.end_minute)})"
        )
    else:
        reason = f"Time slot is already booked ({slot_label(hit.start_minute, hit.end_minute)})"
    return AvailabilityCheck(False, reason, hit.cause)


def find_recurring_conflicts(
    db: Session,
    listing_id: UUID,
    start_date: date,
    start_minute: int,
    end_minute: int,
    interval: RecurrenceInterval,
    horizon_days: Optional[int] = None,
) -> List[RecurringConflict]:
    """
    Existing reservations a prospective subscription would collide with.

    Conflicting dates are skipped by the subscription rather than rejected,
    so callers show these to the consumer before committing.
    """
    horizon_days = horizon_days or settings.RECURRING_CONFLICT_HORIZON_DAYS
    pattern = RecurrencePattern.anchored_on(interval, start_date)
    dates = list(occurrences_between(pattern, start_date, start_date + timedelta(days=horizon_days)))
    if not dates:
        return []

    candidates = (
        db.query(Reservation)
        .filter(
            Reservation.listing_id == listing_id,
            Reservation.date.in_(dates),
            Reservation.status != ReservationStatus.CANCELLED.value,
        )
        .order_by(Reservation.date, Reservation.start_minute)
        .all()
    )
    conflicts = [
        RecurringConflict(
            reservation_id=r.id,
            reservation_number=r.reservation_number,
            date=r.date,
            start_minute=r.start_minute,
            end_minute=r.end_minute,
        )
        for r in candidates
        if overlaps(start_minute, end_minute, r.start_minute, r.end_minute)
    ]
    if conflicts:
        logger.debug(
            "Recurring %s window on listing %s collides with %d reservation(s)",
            interval, listing_id, len(conflicts),
        )
    return conflicts
