"""
Reservation lifecycle.

    PENDING   -> CONFIRMED | CANCELLED
    CONFIRMED -> COMPLETED | CANCELLED
    COMPLETED, CANCELLED are terminal

Rescheduling is not a status transition; it moves the window of a PENDING or
CONFIRMED reservation, only while it is still outside the cancellation
window. Unpaid reservations are repriced; paid ones keep the charged amounts
and may only move to a window of the same length.

Unpaid PENDING reservations hold their slot until ``payment_due_at``; the
expiry job cancels them after that.

Money paths on cancellation:
  - consumer, at least ``cancellation_window_hours`` before start: full refund
  - consumer, inside the window: no refund, owner's share goes to settlement
  - owner or admin, any time: full refund, owner is not paid
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.core.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from slotrent.models.counter import Counter
from slotrent.models.listing import Listing
from slotrent.models.reservation import PaymentStatus, PayoutStatus, Reservation, ReservationStatus
from slotrent.models.user import User, UserRole
from slotrent.services import commission, events
from slotrent.services.availability import check_full_availability
from slotrent.services.gateway import PaymentGateway
from slotrent.services.platform_settings import get_rules
from slotrent.utils.timeslots import format_time, hours_until, to_instant

logger = logging.getLogger(__name__)

TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
}

RESERVATION_COUNTER = "reservation"


@dataclass(frozen=True)
class RefundEligibility:
    eligible: bool
    hours_until_start: float
    window_hours: int
    refund_amount: Decimal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def can_transition(current, new) -> bool:
    return ReservationStatus(new) in TRANSITIONS[ReservationStatus(current)]


def _ensure_transition(reservation: Reservation, new: ReservationStatus) -> None:
    if not can_transition(reservation.status, new):
        raise ConflictError(
            f"Cannot change reservation from {reservation.status} to {ReservationStatus(new).value}",
            code="invalid_transition",
        )


def next_reservation_number(db: Session) -> str:
    """Atomic counter increment; rolls back with the caller's transaction."""
    result = db.execute(
        update(Counter)
        .where(Counter.name == RESERVATION_COUNTER)
        .values(value=Counter.value + 1)
    )
    if result.rowcount == 0:
        db.add(Counter(name=RESERVATION_COUNTER, value=1))
        db.flush()
        value = 1
    else:
        value = db.get(Counter, RESERVATION_COUNTER, populate_existing=True).value
    return f"RSV-{value:06d}"


def actor_role(actor: User, reservation: Reservation) -> Optional[str]:
    """Which side of the reservation the actor is on, or None."""
    if actor.role == UserRole.ADMIN.value:
        return UserRole.ADMIN.value
    if reservation.consumer_id == actor.id:
        return UserRole.CONSUMER.value
    if reservation.listing is not None and reservation.listing.owner_id == actor.id:
        return UserRole.OWNER.value
    return None


def get_reservation(db: Session, reservation_id: UUID, actor: Optional[User] = None) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    # Hide other people's reservations behind a 404
    if reservation is None or (actor is not None and actor_role(actor, reservation) is None):
        raise NotFoundError("Reservation not found")
    return reservation


def get_bookable_listing(db: Session, listing_id: UUID) -> Listing:
    listing = db.get(Listing, listing_id)
    if listing is None or not listing.is_active or not listing.is_approved:
        raise NotFoundError("Listing not found or not available for booking")
    return listing


def validate_window(
    db: Session,
    listing: Listing,
    day: date,
    start_minute: int,
    end_minute: int,
    now: datetime,
) -> int:
    """Return the number of slot units the window covers."""
    if end_minute <= start_minute:
        raise ValidationError("End time must be after start time")
    if start_minute < listing.opening_minute or end_minute > listing.closing_minute:
        raise ValidationError(
            f"Requested time is outside operating hours "
            f"({format_time(listing.opening_minute)} - {format_time(listing.closing_minute)})"
        )
    duration = end_minute - start_minute
    if duration % listing.slot_minutes:
        raise ValidationError(f"Duration must be a multiple of {listing.slot_minutes} minutes")
    if to_instant(day, start_minute) <= now:
        raise ValidationError("Cannot book a time in the past")

    max_days = get_rules(db).max_advance_booking_days
    if (day - now.date()).days > max_days:
        raise ValidationError(f"Bookings can be made at most {max_days} days in advance")
    return duration // listing.slot_minutes


def _flush_guarded(db: Session) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Time slot was just booked by someone else", code="slot_unavailable") from exc


def _other_party(reservation: Reservation, role: str) -> UUID:
    if role == UserRole.CONSUMER.value:
        return reservation.listing.owner_id
    return reservation.consumer_id


def _event_payload(reservation: Reservation, **extra) -> dict:
    payload = {
        "reservation_id": reservation.id,
        "reservation_number": reservation.reservation_number,
        "listing_id": reservation.listing_id,
        "date": reservation.date.isoformat(),
        "start_time": format_time(reservation.start_minute),
        "end_time": format_time(reservation.end_minute),
    }
    payload.update(extra)
    return payload


def enqueue_settlement(db: Session, reservation: Reservation) -> None:
    """Mark the owner's share as due; the settlement sweep picks it up."""
    if reservation.payment_status != PaymentStatus.PAID.value:
        logger.warning(
            "Reservation %s reached a payable state without payment; not settling",
            reservation.reservation_number,
        )
        return
    if reservation.payout_status is None:
        reservation.payout_status = PayoutStatus.PENDING.value
    events.publish(
        db,
        "settlement.requested",
        {"reservation_id": reservation.id, "owner_amount": reservation.owner_amount},
    )


# ---------------------------------------------------------------------------
# Create / pay
# ---------------------------------------------------------------------------


def create_reservation(db: Session, actor: User, data, now: Optional[datetime] = None) -> Reservation:
    if actor.role != UserRole.CONSUMER.value:
        raise AuthorizationError("Only consumers can create reservations")
    now = now or datetime.now()

    listing = get_bookable_listing(db, data.listing_id)
    units = validate_window(db, listing, data.date, data.start_time, data.end_time, now)

    check = check_full_availability(
        db, listing.id, data.date, data.start_time, data.end_time, today=now.date()
    )
    if not check.available:
        raise ConflictError(check.reason, code="slot_unavailable", details={"conflict_type": check.conflict_type})

    breakdown = commission.calculate(db, listing.price_per_slot * units, listing.owner_id)
    reservation = Reservation(
        reservation_number=next_reservation_number(db),
        listing_id=listing.id,
        consumer_id=actor.id,
        date=data.date,
        start_minute=data.start_time,
        end_minute=data.end_time,
        gross_amount=breakdown.gross_amount,
        owner_amount=breakdown.owner_amount,
        platform_amount=breakdown.platform_amount,
        commission_rate=breakdown.rate_used,
        currency=listing.currency or settings.PLATFORM_CURRENCY,
        status=ReservationStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        payment_due_at=datetime.now(timezone.utc) + timedelta(minutes=settings.PENDING_PAYMENT_MINUTES),
        notes=data.notes,
    )
    db.add(reservation)
    _flush_guarded(db)

    events.publish(db, "reservation.created", _event_payload(reservation), recipient_id=listing.owner_id)
    db.commit()
    db.refresh(reservation)
    logger.info(
        "Reservation %s created on listing %s for %s %s",
        reservation.reservation_number, listing.id, data.date, format_time(data.start_time),
    )
    return reservation


def record_payment(db: Session, reservation: Reservation, payment_reference: str) -> Reservation:
    if reservation.payment_status == PaymentStatus.PAID.value:
        if reservation.payment_reference == payment_reference:
            return reservation
        raise ConflictError("Reservation is already paid", code="already_paid")
    if reservation.status == ReservationStatus.CANCELLED.value:
        raise ConflictError("Cannot record payment for a cancelled reservation")
    if reservation.payment_status != PaymentStatus.PENDING.value:
        raise ConflictError(f"Cannot record payment in state {reservation.payment_status}")

    reservation.payment_status = PaymentStatus.PAID.value
    reservation.payment_reference = payment_reference
    reservation.paid_amount = reservation.gross_amount
    db.commit()
    db.refresh(reservation)
    return reservation


def expire_unpaid_reservations(db: Session, now: Optional[datetime] = None) -> int:
    """Cancel PENDING reservations whose payment did not arrive before ``payment_due_at``."""
    now = now or datetime.now(timezone.utc)
    candidates = (
        db.query(Reservation)
        .filter(
            Reservation.status == ReservationStatus.PENDING.value,
            Reservation.payment_status == PaymentStatus.PENDING.value,
            Reservation.payment_due_at.isnot(None),
            Reservation.payment_due_at < now,
        )
        .all()
    )

    expired = 0
    for reservation in candidates:
        # A payment recorded since the query wins
        result = db.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation.id,
                Reservation.status == ReservationStatus.PENDING.value,
                Reservation.payment_status == PaymentStatus.PENDING.value,
            )
            .values(
                status=ReservationStatus.CANCELLED.value,
                cancelled_by="system",
                cancellation_reason="Payment not received in time",
                cancelled_at=now,
            )
        )
        if result.rowcount != 1:
            continue
        events.publish(db, "reservation.expired", _event_payload(reservation), recipient_id=reservation.consumer_id)
        expired += 1
    db.commit()
    if expired:
        logger.info("Released %d unpaid reservation(s)", expired)
    return expired


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def update_status(
    db: Session,
    gateway: PaymentGateway,
    actor: User,
    reservation: Reservation,
    new_status: ReservationStatus,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    new_status = ReservationStatus(new_status)
    if new_status == ReservationStatus.CANCELLED:
        return cancel_reservation(db, gateway, actor, reservation, reason, now)

    role = actor_role(actor, reservation)
    if role not in (UserRole.OWNER.value, UserRole.ADMIN.value):
        raise AuthorizationError("Only the listing owner or an admin can confirm or complete reservations")
    _ensure_transition(reservation, new_status)

    if new_status == ReservationStatus.COMPLETED:
        return complete_reservation(db, reservation, now)

    reservation.status = new_status.value
    events.publish(db, "reservation.confirmed", _event_payload(reservation), recipient_id=reservation.consumer_id)
    db.commit()
    db.refresh(reservation)
    return reservation


def complete_reservation(db: Session, reservation: Reservation, now: Optional[datetime] = None) -> Reservation:
    """COMPLETED, settlement enqueued and, for subscriptions, the next occurrence created."""
    from slotrent.services.subscriptions import schedule_next_occurrence

    _ensure_transition(reservation, ReservationStatus.COMPLETED)
    now = now or datetime.now()

    reservation.status = ReservationStatus.COMPLETED.value
    reservation.completed_at = datetime.now(timezone.utc)
    enqueue_settlement(db, reservation)
    events.publish(db, "reservation.completed", _event_payload(reservation), recipient_id=reservation.consumer_id)

    if reservation.subscription is not None:
        schedule_next_occurrence(db, reservation.subscription, reservation.date, now)

    db.commit()
    db.refresh(reservation)
    return reservation


def collected_amount(reservation: Reservation) -> Decimal:
    """Amount actually charged; rows paid before ``paid_amount`` existed fall back to gross."""
    if reservation.paid_amount is not None:
        return commission.round2(reservation.paid_amount)
    return commission.round2(reservation.gross_amount)


def refund_eligibility(db: Session, reservation: Reservation, now: Optional[datetime] = None) -> RefundEligibility:
    now = now or datetime.now()
    window = get_rules(db).cancellation_window_hours
    hours = hours_until(reservation.date, reservation.start_minute, now)
    eligible = hours >= window
    paid = reservation.payment_status == PaymentStatus.PAID.value
    return RefundEligibility(
        eligible=eligible,
        hours_until_start=round(hours, 2),
        window_hours=window,
        refund_amount=collected_amount(reservation) if eligible and paid else Decimal("0.00"),
    )


def _refund(db: Session, gateway: PaymentGateway, reservation: Reservation) -> None:
    amount = collected_amount(reservation)
    try:
        gateway.create_refund(reservation.payment_reference, amount, idempotency_key=f"refund-{reservation.id}")
    except GatewayError as exc:
        logger.error("Refund for reservation %s failed: %s", reservation.reservation_number, exc.message)
        reservation.payment_status = PaymentStatus.REFUND_FAILED.value
        events.publish_to_admins(db, "refund.failed", _event_payload(reservation, error=exc.message))
        return
    reservation.payment_status = PaymentStatus.REFUNDED.value
    reservation.refund_amount = amount


def cancel_reservation(
    db: Session,
    gateway: PaymentGateway,
    actor: User,
    reservation: Reservation,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    role = actor_role(actor, reservation)
    if role is None:
        raise AuthorizationError("You cannot cancel this reservation")
    _ensure_transition(reservation, ReservationStatus.CANCELLED)
    now = now or datetime.now()

    eligibility = refund_eligibility(db, reservation, now)
    if reservation.payment_status == PaymentStatus.PAID.value:
        if role == UserRole.CONSUMER.value and not eligibility.eligible:
            # Late cancellation: keep the money, owner still gets their share
            reservation.owner_payout_on_cancel = True
            enqueue_settlement(db, reservation)
        else:
            _refund(db, gateway, reservation)

    reservation.status = ReservationStatus.CANCELLED.value
    reservation.cancelled_by = role
    reservation.cancellation_reason = reason
    reservation.cancelled_at = datetime.now(timezone.utc)

    events.publish(
        db,
        "reservation.cancelled",
        _event_payload(reservation, cancelled_by=role, refunded=reservation.payment_status == PaymentStatus.REFUNDED.value),
        recipient_id=_other_party(reservation, role),
    )
    db.commit()
    db.refresh(reservation)
    logger.info(
        "Reservation %s cancelled by %s (refund eligible: %s)",
        reservation.reservation_number, role, eligibility.eligible,
    )
    return reservation


# ---------------------------------------------------------------------------
# Reschedule
# ---------------------------------------------------------------------------


def reschedule_reservation(
    db: Session,
    actor: User,
    reservation: Reservation,
    data,
    now: Optional[datetime] = None,
) -> Reservation:
    if reservation.consumer_id != actor.id:
        raise AuthorizationError("Only the consumer who made the reservation can reschedule it")
    if reservation.status not in (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value):
        raise ConflictError(f"Cannot reschedule a {reservation.status.lower()} reservation", code="invalid_transition")
    if reservation.reschedule_count >= settings.MAX_RESCHEDULES:
        raise ConflictError(
            f"Reservation has already been rescheduled {settings.MAX_RESCHEDULES} times",
            code="reschedule_limit",
        )
    now = now or datetime.now()

    eligibility = refund_eligibility(db, reservation, now)
    if not eligibility.eligible:
        raise ConflictError(
            f"Rescheduling is only allowed at least {eligibility.window_hours} hours before the start",
            code="reschedule_window",
        )

    listing = reservation.listing
    units = validate_window(db, listing, data.date, data.start_time, data.end_time, now)
    paid = reservation.payment_status == PaymentStatus.PAID.value
    if paid and data.end_time - data.start_time != reservation.end_minute - reservation.start_minute:
        raise ConflictError(
            "A paid reservation can only be moved to a window of the same length",
            code="reschedule_duration",
        )
    check = check_full_availability(
        db,
        listing.id,
        data.date,
        data.start_time,
        data.end_time,
        exclude_reservation_id=reservation.id,
        exclude_subscription_id=reservation.subscription_id,
        today=now.date(),
    )
    if not check.available:
        raise ConflictError(check.reason, code="slot_unavailable", details={"conflict_type": check.conflict_type})

    previous = (reservation.date, reservation.start_minute)
    reservation.date = data.date
    reservation.start_minute = data.start_time
    reservation.end_minute = data.end_time
    # Paid amounts stay as charged
    if not paid:
        breakdown = commission.calculate(db, listing.price_per_slot * units, listing.owner_id)
        reservation.gross_amount = breakdown.gross_amount
        reservation.owner_amount = breakdown.owner_amount
        reservation.platform_amount = breakdown.platform_amount
        reservation.commission_rate = breakdown.rate_used
    reservation.reschedule_count += 1
    _flush_guarded(db)

    events.publish(
        db,
        "reservation.rescheduled",
        _event_payload(reservation, previous_date=previous[0].isoformat(), previous_start=format_time(previous[1])),
        recipient_id=listing.owner_id,
    )
    db.commit()
    db.refresh(reservation)
    return reservation


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def list_reservations(
    db: Session,
    actor: User,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    status: Optional[str] = None,
    listing_id: Optional[UUID] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Reservation], int]:
    query = db.query(Reservation)
    if actor.role == UserRole.CONSUMER.value:
        query = query.filter(Reservation.consumer_id == actor.id)
    elif actor.role == UserRole.OWNER.value:
        query = query.join(Listing, Reservation.listing_id == Listing.id).filter(Listing.owner_id == actor.id)

    if date_from:
        query = query.filter(Reservation.date >= date_from)
    if date_to:
        query = query.filter(Reservation.date <= date_to)
    if status:
        query = query.filter(Reservation.status == status.upper())
    if listing_id:
        query = query.filter(Reservation.listing_id == listing_id)

    total = query.count()
    items = (
        query.order_by(Reservation.date.desc(), Reservation.start_minute.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total
