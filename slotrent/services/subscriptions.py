"""
Recurring subscriptions.

A subscription claims the same window on every occurrence of its pattern.
Occurrences materialise one at a time: the first reservation is created with
the subscription, each following one when the previous reservation completes.
Materialised reservations are CONFIRMED and PAID against the subscription's
gateway reference.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.core.exceptions import AuthorizationError, ConflictError, NotFoundError
from slotrent.models.reservation import PaymentStatus, Reservation, ReservationStatus
from slotrent.models.subscription import RecurringSubscription, SubscriptionStatus
from slotrent.models.user import User, UserRole
from slotrent.services import commission, events
from slotrent.services.availability import check_full_availability
from slotrent.services.gateway import PaymentGateway
from slotrent.services.platform_settings import get_rules
from slotrent.services.recurrence import RecurrencePattern, next_occurrence, occurrences_between
from slotrent.services.reservations import (
    cancel_reservation,
    get_bookable_listing,
    next_reservation_number,
    validate_window,
)
from slotrent.utils.timeslots import format_time, overlaps, to_instant

logger = logging.getLogger(__name__)


def _find_subscription_clash(
    db: Session,
    listing_id,
    pattern: RecurrencePattern,
    start_date: date,
    start_minute: int,
    end_minute: int,
) -> Optional[RecurringSubscription]:
    """An active subscription on the listing sharing an occurrence and overlapping the window."""
    horizon = start_date + timedelta(days=settings.RECURRING_CONFLICT_HORIZON_DAYS)
    dates = set(occurrences_between(pattern, start_date, horizon))
    others = (
        db.query(RecurringSubscription)
        .filter(
            RecurringSubscription.listing_id == listing_id,
            RecurringSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .all()
    )
    for other in others:
        if not overlaps(start_minute, end_minute, other.start_minute, other.end_minute):
            continue
        other_pattern = RecurrencePattern.from_subscription(other)
        if dates.intersection(occurrences_between(other_pattern, start_date, horizon)):
            return other
    return None


def create_subscription(db: Session, actor: User, data, now: Optional[datetime] = None) -> RecurringSubscription:
    if actor.role != UserRole.CONSUMER.value:
        raise AuthorizationError("Only consumers can create recurring bookings")
    now = now or datetime.now()

    listing = get_bookable_listing(db, data.listing_id)
    units = validate_window(db, listing, data.start_date, data.start_time, data.end_time, now)
    pattern = RecurrencePattern.anchored_on(data.interval, data.start_date)

    clash = _find_subscription_clash(db, listing.id, pattern, data.start_date, data.start_time, data.end_time)
    if clash is not None:
        raise ConflictError(
            "Another recurring booking already holds this time window",
            code="slot_unavailable",
            details={"conflict_type": "recurring"},
        )

    check = check_full_availability(
        db, listing.id, data.start_date, data.start_time, data.end_time, today=now.date()
    )
    if not check.available:
        raise ConflictError(check.reason, code="slot_unavailable", details={"conflict_type": check.conflict_type})

    subscription = RecurringSubscription(
        listing_id=listing.id,
        consumer_id=actor.id,
        interval=pattern.interval.value,
        day_of_week=pattern.day_of_week,
        day_of_month=pattern.day_of_month,
        start_minute=data.start_time,
        end_minute=data.end_time,
        price_per_occurrence=commission.round2(listing.price_per_slot * units),
        status=SubscriptionStatus.ACTIVE.value,
        gateway_reference=data.payment_reference,
    )
    db.add(subscription)
    db.flush()

    if create_occurrence_reservation(db, subscription, data.start_date) is None:
        db.rollback()
        raise ConflictError("Time slot was just booked by someone else", code="slot_unavailable")

    events.publish(
        db,
        "subscription.created",
        {
            "subscription_id": subscription.id,
            "interval": subscription.interval,
            "anchor": pattern.anchor_label,
            "start_time": format_time(subscription.start_minute),
        },
        recipient_id=listing.owner_id,
    )
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Subscription %s created: %s on listing %s from %s",
        subscription.id, subscription.interval, listing.id, data.start_date,
    )
    return subscription


def create_occurrence_reservation(
    db: Session,
    subscription: RecurringSubscription,
    day: date,
) -> Optional[Reservation]:
    """
    Materialise the occurrence on ``day``. Returns the existing reservation
    when one is already there, or None when the window is taken on that date
    (the occurrence is skipped). The caller commits.
    """
    existing = (
        db.query(Reservation)
        .filter(
            Reservation.subscription_id == subscription.id,
            Reservation.date == day,
            Reservation.status != ReservationStatus.CANCELLED.value,
        )
        .first()
    )
    if existing is not None:
        return existing

    check = check_full_availability(
        db,
        subscription.listing_id,
        day,
        subscription.start_minute,
        subscription.end_minute,
        exclude_subscription_id=subscription.id,
        today=day,
    )
    if not check.available:
        logger.warning(
            "Skipping occurrence of subscription %s on %s: %s", subscription.id, day, check.reason
        )
        return None

    listing = subscription.listing
    breakdown = commission.calculate(db, subscription.price_per_occurrence, listing.owner_id)
    reservation = Reservation(
        reservation_number=next_reservation_number(db),
        listing_id=subscription.listing_id,
        consumer_id=subscription.consumer_id,
        subscription_id=subscription.id,
        date=day,
        start_minute=subscription.start_minute,
        end_minute=subscription.end_minute,
        gross_amount=breakdown.gross_amount,
        owner_amount=breakdown.owner_amount,
        platform_amount=breakdown.platform_amount,
        commission_rate=breakdown.rate_used,
        currency=listing.currency or settings.PLATFORM_CURRENCY,
        status=ReservationStatus.CONFIRMED.value,
        payment_status=PaymentStatus.PAID.value,
        payment_reference=subscription.gateway_reference,
        paid_amount=breakdown.gross_amount,
    )
    try:
        with db.begin_nested():
            db.add(reservation)
    except IntegrityError:
        # Booked concurrently since the availability check
        logger.warning(
            "Skipping occurrence of subscription %s on %s: window was just taken", subscription.id, day
        )
        return None
    subscription.last_occurrence_date = day
    return reservation


def schedule_next_occurrence(
    db: Session,
    subscription: RecurringSubscription,
    after: date,
    now: Optional[datetime] = None,
) -> Optional[Reservation]:
    """Create the follow-on reservation after ``after``, if within the booking horizon."""
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        return None
    if subscription.cancel_at_period_end:
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = datetime.now(timezone.utc)
        logger.info("Subscription %s ended at period end", subscription.id)
        return None

    now = now or datetime.now()
    pattern = RecurrencePattern.from_subscription(subscription)
    candidate = next_occurrence(after, pattern)
    # A late completion must not create reservations that already started
    while to_instant(candidate, subscription.start_minute) <= now:
        candidate = next_occurrence(candidate, pattern)

    horizon = now.date() + timedelta(days=get_rules(db).max_advance_booking_days)
    if candidate > horizon:
        logger.debug("Next occurrence %s of subscription %s is beyond the horizon", candidate, subscription.id)
        return None
    return create_occurrence_reservation(db, subscription, candidate)


def list_subscriptions(db: Session, actor: User) -> List[RecurringSubscription]:
    query = db.query(RecurringSubscription)
    if actor.role == UserRole.CONSUMER.value:
        query = query.filter(RecurringSubscription.consumer_id == actor.id)
    elif actor.role == UserRole.OWNER.value:
        query = query.filter(RecurringSubscription.listing.has(owner_id=actor.id))
    return query.order_by(RecurringSubscription.created_at.desc()).all()


def get_subscription(db: Session, subscription_id, actor: User) -> RecurringSubscription:
    subscription = db.get(RecurringSubscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    if actor.role != UserRole.ADMIN.value and actor.id not in (
        subscription.consumer_id,
        subscription.listing.owner_id,
    ):
        raise NotFoundError("Subscription not found")
    return subscription


def cancel_subscription(
    db: Session,
    gateway: PaymentGateway,
    actor: User,
    subscription: RecurringSubscription,
    immediately: bool = False,
    now: Optional[datetime] = None,
) -> RecurringSubscription:
    """
    Period-end cancellation stops new occurrences after the current one.
    Immediate cancellation also cancels upcoming occurrence reservations,
    which follow the normal cancellation money rules.
    """
    if actor.role != UserRole.ADMIN.value and actor.id != subscription.consumer_id:
        raise AuthorizationError("You cannot cancel this subscription")
    if subscription.status == SubscriptionStatus.CANCELED.value:
        raise ConflictError("Subscription is already cancelled", code="invalid_transition")
    now = now or datetime.now()

    if not immediately:
        subscription.cancel_at_period_end = True
        db.commit()
        db.refresh(subscription)
        return subscription

    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.canceled_at = datetime.now(timezone.utc)
    db.flush()

    upcoming = (
        db.query(Reservation)
        .filter(
            Reservation.subscription_id == subscription.id,
            Reservation.date >= now.date(),
            Reservation.status.in_([ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value]),
        )
        .all()
    )
    for reservation in upcoming:
        if to_instant(reservation.date, reservation.start_minute) > now:
            cancel_reservation(db, gateway, actor, reservation, "Recurring booking cancelled", now)

    events.publish(
        db,
        "subscription.canceled",
        {"subscription_id": subscription.id},
        recipient_id=subscription.listing.owner_id,
    )
    db.commit()
    db.refresh(subscription)
    return subscription
