from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from slotrent.core.config import settings
from slotrent.core.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayTransientError,
    NotFoundError,
    ValidationError,
)
from slotrent.models import OutboundEvent, PaymentStatus, PayoutStatus, ReservationStatus
from slotrent.schemas.reservation import ReservationCreate, ReservationReschedule
from slotrent.services import reservations as service
from slotrent.services.settlement import is_payable
from conftest import NOW, TODAY

DAY = TODAY + timedelta(days=3)


def _create(db, listing, consumer, start="10:00", end="11:00", day=DAY):
    data = ReservationCreate(listing_id=listing.id, date=day, start_time=start, end_time=end)
    return service.create_reservation(db, consumer, data, now=NOW)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_fixes_price_and_commission(db, listing, consumer):
    reservation = _create(db, listing, consumer, "10:00", "12:00")

    assert reservation.reservation_number == "RSV-000001"
    assert reservation.status == ReservationStatus.PENDING.value
    assert reservation.payment_status == PaymentStatus.PENDING.value
    assert reservation.gross_amount == Decimal("100.00")
    assert reservation.platform_amount == Decimal("20.00")
    assert reservation.owner_amount == Decimal("80.00")
    assert reservation.commission_rate == 20

    second = _create(db, listing, consumer, "13:00", "14:00")
    assert second.reservation_number == "RSV-000002"

    events = db.query(OutboundEvent).filter(OutboundEvent.event_type == "reservation.created").all()
    assert [e.recipient_id for e in events] == [listing.owner_id, listing.owner_id]


def test_overlapping_request_is_rejected_but_back_to_back_is_fine(db, listing, consumer, other_consumer):
    _create(db, listing, consumer, "10:00", "11:00")

    with pytest.raises(ConflictError) as excinfo:
        _create(db, listing, other_consumer, "10:00", "11:00")
    assert excinfo.value.code == "slot_unavailable"

    nxt = _create(db, listing, other_consumer, "11:00", "12:00")
    assert nxt.start_minute == 660


@pytest.mark.parametrize(
    "start, end, day",
    [
        ("8:00", "9:00", DAY),                        # before opening
        ("16:00", "18:00", DAY),                      # past closing
        ("10:00", "10:30", DAY),                      # not a whole slot
        ("10:00", "11:00", TODAY - timedelta(days=1)),  # in the past
        ("10:00", "11:00", TODAY + timedelta(days=31)),  # beyond the booking horizon
    ],
)
def test_invalid_windows_are_rejected(db, listing, consumer, start, end, day):
    with pytest.raises(ValidationError):
        _create(db, listing, consumer, start, end, day)


def test_only_consumers_book_approved_listings(db, listing, owner, consumer):
    with pytest.raises(AuthorizationError):
        _create(db, listing, owner)

    listing.is_approved = False
    db.commit()
    with pytest.raises(NotFoundError):
        _create(db, listing, consumer)


def test_record_payment_is_idempotent(db, listing, consumer):
    reservation = _create(db, listing, consumer)
    service.record_payment(db, reservation, "pi_123")
    service.record_payment(db, reservation, "pi_123")
    assert reservation.payment_status == PaymentStatus.PAID.value

    with pytest.raises(ConflictError):
        service.record_payment(db, reservation, "pi_other")


def test_other_consumers_cannot_see_a_reservation(db, listing, consumer, other_consumer, owner):
    reservation = _create(db, listing, consumer)
    assert service.get_reservation(db, reservation.id, owner) is reservation
    with pytest.raises(NotFoundError):
        service.get_reservation(db, reservation.id, other_consumer)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_transition_table():
    assert service.can_transition("PENDING", ReservationStatus.CONFIRMED)
    assert service.can_transition("CONFIRMED", ReservationStatus.COMPLETED)
    assert not service.can_transition("PENDING", ReservationStatus.COMPLETED)
    assert not service.can_transition("COMPLETED", ReservationStatus.CANCELLED)
    assert not service.can_transition("CANCELLED", ReservationStatus.CONFIRMED)


def test_owner_confirms_and_completes(db, gateway, listing, owner, consumer):
    reservation = _create(db, listing, consumer)
    service.record_payment(db, reservation, "pi_1")

    with pytest.raises(AuthorizationError):
        service.update_status(db, gateway, consumer, reservation, ReservationStatus.CONFIRMED)
    with pytest.raises(ConflictError):
        service.update_status(db, gateway, owner, reservation, ReservationStatus.COMPLETED)

    service.update_status(db, gateway, owner, reservation, ReservationStatus.CONFIRMED)
    assert reservation.status == ReservationStatus.CONFIRMED.value

    service.update_status(db, gateway, owner, reservation, ReservationStatus.COMPLETED, now=NOW)
    assert reservation.status == ReservationStatus.COMPLETED.value
    assert reservation.payout_status == PayoutStatus.PENDING.value
    assert is_payable(reservation)

    with pytest.raises(ConflictError) as excinfo:
        service.update_status(db, gateway, owner, reservation, ReservationStatus.CONFIRMED)
    assert excinfo.value.code == "invalid_transition"


# ---------------------------------------------------------------------------
# Reschedule
# ---------------------------------------------------------------------------


def test_reschedule_is_capped_at_three(db, listing, consumer):
    reservation = _create(db, listing, consumer, "9:00", "10:00")
    for hour in (10, 11, 12):
        data = ReservationReschedule(date=DAY, start_time=f"{hour}:00", end_time=f"{hour + 1}:00")
        service.reschedule_reservation(db, consumer, reservation, data, now=NOW)
    assert reservation.reschedule_count == 3

    data = ReservationReschedule(date=DAY, start_time="15:00", end_time="16:00")
    with pytest.raises(ConflictError) as excinfo:
        service.reschedule_reservation(db, consumer, reservation, data, now=NOW)
    assert excinfo.value.code == "reschedule_limit"


def test_reschedule_may_overlap_own_window_and_reprices(db, listing, consumer):
    reservation = _create(db, listing, consumer, "10:00", "11:00")
    data = ReservationReschedule(date=DAY, start_time="10:00", end_time="12:00")
    service.reschedule_reservation(db, consumer, reservation, data, now=NOW)

    assert (reservation.start_minute, reservation.end_minute) == (600, 720)
    assert reservation.gross_amount == Decimal("100.00")
    assert reservation.owner_amount == Decimal("80.00")


def test_reschedule_into_someone_elses_slot_fails(db, listing, consumer, other_consumer):
    mine = _create(db, listing, consumer, "10:00", "11:00")
    _create(db, listing, other_consumer, "13:00", "14:00")

    data = ReservationReschedule(date=DAY, start_time="13:00", end_time="14:00")
    with pytest.raises(ConflictError):
        service.reschedule_reservation(db, consumer, mine, data, now=NOW)
    with pytest.raises(AuthorizationError):
        service.reschedule_reservation(db, other_consumer, mine, data, now=NOW)


def test_reschedule_inside_cancellation_window_is_rejected(db, gateway, consumer, make_reservation):
    # Starts two hours after NOW
    reservation = make_reservation(day=TODAY, start=10 * 60, end=11 * 60)
    data = ReservationReschedule(date=DAY, start_time="10:00", end_time="11:00")
    with pytest.raises(ConflictError) as excinfo:
        service.reschedule_reservation(db, consumer, reservation, data, now=NOW)
    assert excinfo.value.code == "reschedule_window"
    assert reservation.date == TODAY
    assert reservation.reschedule_count == 0

    # Still a late cancellation: no refund
    service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)
    assert reservation.payment_status == PaymentStatus.PAID.value
    assert gateway.refunds == []


def test_paid_reservation_keeps_its_length_and_amounts(db, gateway, listing, consumer):
    reservation = _create(db, listing, consumer, "10:00", "11:00")
    service.record_payment(db, reservation, "pi_1")
    assert reservation.paid_amount == Decimal("50.00")

    longer = ReservationReschedule(date=DAY, start_time="10:00", end_time="14:00")
    with pytest.raises(ConflictError) as excinfo:
        service.reschedule_reservation(db, consumer, reservation, longer, now=NOW)
    assert excinfo.value.code == "reschedule_duration"

    moved = ReservationReschedule(date=DAY + timedelta(days=1), start_time="13:00", end_time="14:00")
    service.reschedule_reservation(db, consumer, reservation, moved, now=NOW)
    assert reservation.gross_amount == Decimal("50.00")
    assert reservation.owner_amount == Decimal("40.00")

    service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)
    assert reservation.refund_amount == Decimal("50.00")
    assert gateway.refunds[0]["amount"] == Decimal("50.00")


def test_refund_never_exceeds_the_collected_amount(db, gateway, consumer, make_reservation):
    reservation = make_reservation(day=DAY, paid_amount=Decimal("80.00"))
    assert service.refund_eligibility(db, reservation, NOW).refund_amount == Decimal("80.00")

    service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)
    assert gateway.refunds[0]["amount"] == Decimal("80.00")


# ---------------------------------------------------------------------------
# Payment deadline
# ---------------------------------------------------------------------------


def test_unpaid_reservation_releases_its_slot_after_the_deadline(db, listing, consumer, other_consumer):
    reservation = _create(db, listing, consumer, "10:00", "11:00")
    assert reservation.payment_due_at is not None
    assert service.expire_unpaid_reservations(db) == 0

    later = datetime.now(timezone.utc) + timedelta(minutes=settings.PENDING_PAYMENT_MINUTES + 1)
    assert service.expire_unpaid_reservations(db, now=later) == 1
    db.refresh(reservation)
    assert reservation.status == ReservationStatus.CANCELLED.value
    assert reservation.cancelled_by == "system"
    event = db.query(OutboundEvent).filter(OutboundEvent.event_type == "reservation.expired").one()
    assert event.recipient_id == consumer.id

    again = _create(db, listing, other_consumer, "10:00", "11:00")
    assert again.status == ReservationStatus.PENDING.value


def test_paid_reservation_is_not_expired(db, listing, consumer):
    reservation = _create(db, listing, consumer)
    service.record_payment(db, reservation, "pi_1")

    later = datetime.now(timezone.utc) + timedelta(minutes=settings.PENDING_PAYMENT_MINUTES + 1)
    assert service.expire_unpaid_reservations(db, now=later) == 0
    db.refresh(reservation)
    assert reservation.status == ReservationStatus.PENDING.value


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_refund_eligibility_boundary(db, make_reservation):
    exactly = make_reservation(day=TODAY + timedelta(days=1), start=8 * 60, end=9 * 60)
    result = service.refund_eligibility(db, exactly, NOW)
    assert result.eligible
    assert result.hours_until_start == 24
    assert result.refund_amount == Decimal("100.00")

    later = datetime(2026, 3, 2, 8, 1)
    assert not service.refund_eligibility(db, exactly, later).eligible


def test_early_consumer_cancellation_refunds_in_full(db, gateway, consumer, make_reservation):
    reservation = make_reservation(day=DAY)
    service.cancel_reservation(db, gateway, consumer, reservation, "Plans changed", now=NOW)

    assert reservation.status == ReservationStatus.CANCELLED.value
    assert reservation.payment_status == PaymentStatus.REFUNDED.value
    assert reservation.refund_amount == Decimal("100.00")
    assert reservation.cancelled_by == "consumer"
    assert gateway.refunds[0]["key"] == f"refund-{reservation.id}"
    assert not is_payable(reservation)


def test_late_consumer_cancellation_pays_owner(db, gateway, consumer, make_reservation):
    reservation = make_reservation(day=TODAY, start=16 * 60, end=17 * 60)
    service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)

    assert reservation.payment_status == PaymentStatus.PAID.value
    assert reservation.refund_amount is None
    assert reservation.owner_payout_on_cancel
    assert reservation.payout_status == PayoutStatus.PENDING.value
    assert gateway.refunds == []
    assert is_payable(reservation)


def test_late_owner_cancellation_still_refunds(db, gateway, owner, make_reservation):
    reservation = make_reservation(day=TODAY, start=16 * 60, end=17 * 60)
    service.cancel_reservation(db, gateway, owner, reservation, now=NOW)

    assert reservation.payment_status == PaymentStatus.REFUNDED.value
    assert reservation.cancelled_by == "owner"
    assert not reservation.owner_payout_on_cancel
    assert not is_payable(reservation)


def test_failed_refund_is_flagged_for_admins(db, gateway, consumer, admin, make_reservation):
    gateway.refund_errors.append(GatewayTransientError("down"))
    reservation = make_reservation(day=DAY)
    service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)

    assert reservation.status == ReservationStatus.CANCELLED.value
    assert reservation.payment_status == PaymentStatus.REFUND_FAILED.value
    event = db.query(OutboundEvent).filter(OutboundEvent.event_type == "refund.failed").one()
    assert event.recipient_id == admin.id


def test_cancelled_reservation_cannot_be_cancelled_again(db, gateway, consumer, make_reservation):
    reservation = make_reservation(day=DAY, status=ReservationStatus.CANCELLED)
    with pytest.raises(ConflictError):
        service.cancel_reservation(db, gateway, consumer, reservation, now=NOW)


def test_list_reservations_scopes_by_role(db, listing, consumer, other_consumer, owner, admin):
    _create(db, listing, consumer, "10:00", "11:00")
    _create(db, listing, other_consumer, "11:00", "12:00")

    mine, total = service.list_reservations(db, consumer)
    assert total == 1 and mine[0].consumer_id == consumer.id
    assert service.list_reservations(db, owner)[1] == 2
    assert service.list_reservations(db, admin, status="pending")[1] == 2
    assert service.list_reservations(db, admin, date_from=DAY + timedelta(days=1))[1] == 0
