from datetime import datetime, timedelta, timezone
from decimal import Decimal

from slotrent.core.exceptions import GatewayPermanentError, GatewayTransientError
from slotrent.models import (
    OutboundEvent,
    Payout,
    PayoutAccount,
    PayoutRecordStatus,
    PayoutReservation,
    PayoutStatus,
    PaymentStatus,
    ReservationStatus,
)
from slotrent.services import settlement
from slotrent.services.payout_accounts import (
    create_payout_account,
    refresh_account_status,
    release_held_for_capable_accounts,
)
from conftest import NOW, TODAY

YESTERDAY = TODAY - timedelta(days=1)


def _completed(make_reservation, **fields):
    fields.setdefault("payout_status", PayoutStatus.PENDING.value)
    return make_reservation(day=YESTERDAY, status=ReservationStatus.COMPLETED, **fields)


def test_completed_paid_reservation_is_paid_out_once(db, gateway, capable_account, make_reservation):
    reservation = _completed(make_reservation)

    result = settlement.run_settlement_sweep(db, gateway)
    assert result.processed == 1

    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PAID.value
    payout = db.query(Payout).one()
    assert payout.amount == Decimal("80.00")
    assert payout.status == PayoutRecordStatus.PAID.value
    assert payout.reservation_ids == [reservation.id]
    assert reservation.payout_id == payout.id
    assert gateway.payout_calls[0]["idempotency_key"] == f"payout-{reservation.id}"
    assert gateway.payout_calls[0]["account_id"] == capable_account.gateway_account_id

    # Second sweep and a direct re-settle do nothing
    assert settlement.run_settlement_sweep(db, gateway).processed == 0
    assert settlement.settle_reservation(db, gateway, reservation.id) == settlement.OUTCOME_SKIPPED
    assert db.query(Payout).count() == 1
    assert len(gateway.payout_calls) == 1


def test_claimed_reservation_is_not_resubmitted(db, gateway, capable_account, make_reservation):
    reservation = _completed(make_reservation, payout_status=PayoutStatus.PROCESSING.value)
    assert settlement.settle_reservation(db, gateway, reservation.id) == settlement.OUTCOME_SKIPPED
    assert gateway.payout_calls == []


def test_unpaid_or_refunded_reservations_are_never_selected(db, gateway, capable_account, make_reservation):
    _completed(make_reservation, payment_status=PaymentStatus.PENDING)
    make_reservation(
        day=YESTERDAY,
        status=ReservationStatus.CANCELLED,
        payment_status=PaymentStatus.REFUNDED,
    )
    make_reservation(day=TODAY + timedelta(days=2), status=ReservationStatus.CONFIRMED)

    assert settlement.payable_reservation_ids(db) == []


def test_late_cancellation_is_settled(db, gateway, capable_account, make_reservation):
    reservation = make_reservation(
        day=YESTERDAY,
        status=ReservationStatus.CANCELLED,
        owner_payout_on_cancel=True,
        payout_status=PayoutStatus.PENDING.value,
    )
    assert settlement.payable_reservation_ids(db) == [reservation.id]
    settlement.run_settlement_sweep(db, gateway)
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PAID.value


def test_missing_account_holds_until_capable(db, gateway, owner, make_reservation):
    reservation = _completed(make_reservation)

    result = settlement.run_settlement_sweep(db, gateway)
    assert result.held == 1
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.HELD.value
    assert reservation.payout_held_reason == settlement.HELD_NO_ACCOUNT

    account = create_payout_account(db, gateway, owner)
    settlement.run_settlement_sweep(db, gateway)
    db.refresh(reservation)
    assert reservation.payout_held_reason == settlement.HELD_NOT_CAPABLE
    assert db.query(OutboundEvent).filter(OutboundEvent.event_type == "payout.held").count() == 2

    gateway.make_capable(account.gateway_account_id)
    _, became_capable, released = refresh_account_status(db, gateway, owner)
    assert became_capable
    assert released == 1
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PENDING.value

    settlement.run_settlement_sweep(db, gateway)
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PAID.value


def test_start_of_cycle_release(db, gateway, capable_account, make_reservation):
    reservation = _completed(make_reservation, payout_status=PayoutStatus.HELD.value)
    assert release_held_for_capable_accounts(db) == 1
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PENDING.value


def test_transient_error_leaves_reservation_pending(db, gateway, capable_account, make_reservation):
    gateway.payout_errors.append(GatewayTransientError("timeout"))
    reservation = _completed(make_reservation)

    result = settlement.run_settlement_sweep(db, gateway)
    assert result.failed == 1
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PENDING.value
    assert db.query(Payout).count() == 0

    settlement.run_settlement_sweep(db, gateway)
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.PAID.value
    # Same idempotency key on both attempts
    assert {c["idempotency_key"] for c in gateway.payout_calls} == {f"payout-{reservation.id}"}


def test_permanent_error_is_recorded_and_escalated(db, gateway, capable_account, admin, make_reservation):
    gateway.payout_errors.append(GatewayPermanentError("Account closed", failure_code="account_closed"))
    reservation = _completed(make_reservation)

    settlement.run_settlement_sweep(db, gateway)
    db.refresh(reservation)
    assert reservation.payout_status == PayoutStatus.FAILED.value
    payout = db.query(Payout).one()
    assert payout.status == PayoutRecordStatus.FAILED.value
    assert payout.failure_code == "account_closed"
    assert payout.failure_message == "Account closed"
    event = db.query(OutboundEvent).filter(OutboundEvent.event_type == "payout.failed").one()
    assert event.recipient_id == admin.id

    # Not picked up by the regular sweep again
    assert settlement.payable_reservation_ids(db) == []


def test_failed_payout_is_retried_once(db, gateway, capable_account, admin, make_reservation):
    gateway.payout_errors.append(GatewayPermanentError("Declined", failure_code="declined"))
    reservation = _completed(make_reservation)
    settlement.run_settlement_sweep(db, gateway)
    payout = db.query(Payout).one()

    counts = settlement.retry_failed_payouts(db, gateway)
    assert counts["recovered"] == 1
    db.refresh(payout)
    db.refresh(reservation)
    assert payout.status == PayoutRecordStatus.PAID.value
    assert payout.retry_count == 1
    assert reservation.payout_status == PayoutStatus.PAID.value
    assert gateway.payout_calls[-1]["idempotency_key"] == f"payout-{payout.id}-retry-1"

    assert settlement.retry_failed_payouts(db, gateway)["retried"] == 0


def test_retry_reuses_transfer_that_already_went_through(db, gateway, capable_account, admin, make_reservation):
    gateway.payout_errors.append(
        GatewayPermanentError("Bank account closed", failure_code="account_closed", transfer_id="tr_first")
    )
    _completed(make_reservation)
    settlement.run_settlement_sweep(db, gateway)
    payout = db.query(Payout).one()
    assert payout.gateway_transfer_id == "tr_first"
    assert gateway.payout_calls[0]["transfer_id"] is None

    assert settlement.retry_failed_payouts(db, gateway)["recovered"] == 1
    db.refresh(payout)
    assert gateway.payout_calls[-1]["transfer_id"] == "tr_first"
    assert payout.gateway_transfer_id == "tr_first"


def test_second_failure_is_permanent(db, gateway, capable_account, admin, make_reservation):
    gateway.payout_errors.extend(
        [
            GatewayPermanentError("Declined", failure_code="declined"),
            GatewayPermanentError("Declined again", failure_code="declined"),
        ]
    )
    _completed(make_reservation)
    settlement.run_settlement_sweep(db, gateway)

    counts = settlement.retry_failed_payouts(db, gateway)
    assert counts["failed"] == 1
    payout = db.query(Payout).one()
    assert payout.retry_count == 1
    assert payout.failure_message == "Declined again"
    assert db.query(OutboundEvent).filter(OutboundEvent.event_type == "payout.failed_permanently").count() == 1
    assert settlement.retry_failed_payouts(db, gateway)["retried"] == 0


def test_old_failures_are_not_retried(db, gateway, capable_account, make_reservation):
    gateway.payout_errors.append(GatewayPermanentError("Declined", failure_code="declined"))
    _completed(make_reservation)
    settlement.run_settlement_sweep(db, gateway)

    later = datetime.now(timezone.utc) + timedelta(days=2)
    assert settlement.retry_failed_payouts(db, gateway, now=later)["retried"] == 0


def test_gateway_status_updates(db, gateway, capable_account, make_reservation):
    gateway.payout_status = "processing"
    reservation = _completed(make_reservation)
    assert settlement.settle_reservation(db, gateway, reservation.id) == settlement.OUTCOME_PROCESSING
    payout = db.query(Payout).one()
    assert reservation.payout_status == PayoutStatus.PROCESSING.value

    settlement.apply_payout_update(db, payout.gateway_payout_id, "paid")
    db.refresh(reservation)
    assert payout.status == PayoutRecordStatus.PAID.value
    assert reservation.payout_status == PayoutStatus.PAID.value

    # Paid payouts are final
    settlement.apply_payout_update(db, payout.gateway_payout_id, "failed", failure_code="late")
    assert payout.status == PayoutRecordStatus.PAID.value
    assert settlement.apply_payout_update(db, "po_unknown", "paid") is None


def test_completion_sweep_completes_ended_reservations(db, make_reservation):
    ended = make_reservation(day=TODAY - timedelta(days=1), status=ReservationStatus.CONFIRMED)
    paid_pending = make_reservation(
        day=TODAY - timedelta(days=1), start=12 * 60, end=13 * 60, status=ReservationStatus.PENDING
    )
    unpaid_pending = make_reservation(
        day=TODAY - timedelta(days=1),
        start=14 * 60,
        end=15 * 60,
        status=ReservationStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )
    upcoming = make_reservation(day=TODAY, start=9 * 60, end=10 * 60, status=ReservationStatus.CONFIRMED)

    assert settlement.complete_past_reservations(db, now=NOW) == 2
    for r in (ended, paid_pending, unpaid_pending, upcoming):
        db.refresh(r)
    assert ended.status == ReservationStatus.COMPLETED.value
    assert ended.payout_status == PayoutStatus.PENDING.value
    assert paid_pending.status == ReservationStatus.COMPLETED.value
    assert unpaid_pending.status == ReservationStatus.PENDING.value
    assert upcoming.status == ReservationStatus.CONFIRMED.value


def test_payout_account_registration_is_idempotent(db, gateway, owner, consumer):
    first = create_payout_account(db, gateway, owner)
    second = create_payout_account(db, gateway, owner)
    assert first.id == second.id
    assert db.query(PayoutAccount).count() == 1
    assert not first.is_payout_capable
    assert first.requirements == ["external_account"]
    assert db.query(PayoutReservation).count() == 0
