"""
Settlement engine.

Moves the owner's share of payable reservations to their payout account.

A reservation is payable when it is PAID and either COMPLETED or CANCELLED
late by the consumer (``owner_payout_on_cancel``), and its payout status is
unset, PENDING or HELD. ``payout_status`` doubles as the claim flag: a sweep
only calls the gateway after flipping it to PROCESSING with a conditional
update, so concurrent sweeps never submit the same reservation twice. The
gateway call also carries an idempotency key derived from the reservation id
and ``payout_reservations.reservation_id`` is unique.

Failure handling:
  - transient gateway error: payout status back to PENDING, no Payout row
  - permanent gateway error: Payout row marked failed with the gateway's
    code/message, reservation FAILED, admins notified; retried once within
    ``FAILED_PAYOUT_RETRY_HOURS`` by ``retry_failed_payouts``. A transfer
    that already reached the owner's account is stored on the Payout and
    the retry only re-issues the payout from it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.core.exceptions import GatewayPermanentError, GatewayTransientError
from slotrent.models.payout import Payout, PayoutAccount, PayoutRecordStatus, PayoutReservation
from slotrent.models.reservation import (
    CLAIMABLE_PAYOUT_STATUSES,
    PaymentStatus,
    PayoutStatus,
    Reservation,
    ReservationStatus,
)
from slotrent.services import events
from slotrent.services.gateway import PAYOUT_STATUS_MAP, GatewayPayout, PaymentGateway
from slotrent.services.payout_accounts import get_account
from slotrent.utils.timeslots import to_instant

logger = logging.getLogger(__name__)

OUTCOME_PAID = "paid"
OUTCOME_PROCESSING = "processing"
OUTCOME_HELD = "held"
OUTCOME_SKIPPED = "skipped"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"

HELD_NO_ACCOUNT = "Owner has no payout account"
HELD_NOT_CAPABLE = "Owner payout account cannot receive payouts yet"


@dataclass
class SweepResult:
    processed: int = 0
    held: int = 0
    skipped: int = 0
    failed: int = 0
    details: List[Dict[str, str]] = field(default_factory=list)

    def record(self, reservation_id, outcome: str, message: str = "") -> None:
        if outcome in (OUTCOME_PAID, OUTCOME_PROCESSING):
            self.processed += 1
        elif outcome == OUTCOME_HELD:
            self.held += 1
        elif outcome in (OUTCOME_FAILED, OUTCOME_RETRY):
            self.failed += 1
        else:
            self.skipped += 1
        self.details.append({"reservation_id": str(reservation_id), "outcome": outcome, "message": message})


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def _payable_clause():
    return and_(
        Reservation.payment_status == PaymentStatus.PAID.value,
        or_(
            Reservation.payout_status.is_(None),
            Reservation.payout_status.in_(CLAIMABLE_PAYOUT_STATUSES),
        ),
        or_(
            Reservation.status == ReservationStatus.COMPLETED.value,
            and_(
                Reservation.status == ReservationStatus.CANCELLED.value,
                Reservation.owner_payout_on_cancel == True,
            ),
        ),
    )


def is_payable(reservation: Reservation) -> bool:
    if reservation.payment_status != PaymentStatus.PAID.value:
        return False
    if reservation.payout_status not in (None,) + CLAIMABLE_PAYOUT_STATUSES:
        return False
    if reservation.status == ReservationStatus.COMPLETED.value:
        return True
    return reservation.status == ReservationStatus.CANCELLED.value and bool(reservation.owner_payout_on_cancel)


def payable_reservation_ids(db: Session, limit: Optional[int] = None) -> List[UUID]:
    query = db.query(Reservation.id).filter(_payable_clause()).order_by(Reservation.date, Reservation.start_minute)
    if limit:
        query = query.limit(limit)
    return [row[0] for row in query]


# ---------------------------------------------------------------------------
# Per-reservation settlement
# ---------------------------------------------------------------------------


def _hold(db: Session, reservation: Reservation, reason: str) -> str:
    if reservation.payout_status != PayoutStatus.HELD.value or reservation.payout_held_reason != reason:
        reservation.payout_status = PayoutStatus.HELD.value
        reservation.payout_held_reason = reason
        events.publish(
            db,
            "payout.held",
            {
                "reservation_id": reservation.id,
                "reservation_number": reservation.reservation_number,
                "amount": reservation.owner_amount,
                "reason": reason,
            },
            recipient_id=reservation.listing.owner_id,
        )
        logger.info("Payout for %s held: %s", reservation.reservation_number, reason)
    db.commit()
    return OUTCOME_HELD


def _claim(db: Session, reservation_id: UUID) -> bool:
    result = db.execute(
        update(Reservation)
        .where(Reservation.id == reservation_id, _payable_clause())
        .values(payout_status=PayoutStatus.PROCESSING.value, payout_held_reason=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _record_payout(
    db: Session,
    account: PayoutAccount,
    reservation: Reservation,
    result: Optional[GatewayPayout] = None,
    error: Optional[GatewayPermanentError] = None,
) -> Payout:
    payout = Payout(
        payout_account_id=account.id,
        amount=reservation.owner_amount,
        currency=reservation.currency or settings.PLATFORM_CURRENCY,
        description=f"Payout for {reservation.reservation_number}",
    )
    if error is not None:
        payout.status = PayoutRecordStatus.FAILED.value
        payout.failure_code = error.failure_code
        payout.failure_message = error.message
        payout.gateway_transfer_id = error.transfer_id
    else:
        payout.gateway_payout_id = result.payout_id
        payout.gateway_transfer_id = result.transfer_id
        payout.status = result.status
        payout.arrival_date = result.arrival_date
        payout.failure_code = result.failure_code
        payout.failure_message = result.failure_message
    payout.items.append(PayoutReservation(reservation_id=reservation.id))
    db.add(payout)
    db.flush()
    reservation.payout_id = payout.id
    return payout


def _reservation_payout_status(record_status: str) -> str:
    return {
        PayoutRecordStatus.PAID.value: PayoutStatus.PAID.value,
        PayoutRecordStatus.FAILED.value: PayoutStatus.FAILED.value,
    }.get(record_status, PayoutStatus.PROCESSING.value)


def _notify_failure(db: Session, payout: Payout, reservation: Reservation, event_type: str = "payout.failed") -> None:
    events.publish_to_admins(
        db,
        event_type,
        {
            "payout_id": payout.id,
            "reservation_id": reservation.id,
            "reservation_number": reservation.reservation_number,
            "amount": payout.amount,
            "failure_code": payout.failure_code,
            "failure_message": payout.failure_message,
        },
    )


def settle_reservation(db: Session, gateway: PaymentGateway, reservation_id: UUID) -> str:
    """Settle one reservation and return the outcome name."""
    reservation = db.get(Reservation, reservation_id, populate_existing=True)
    if reservation is None or not is_payable(reservation):
        return OUTCOME_SKIPPED

    already_linked = db.query(PayoutReservation).filter(PayoutReservation.reservation_id == reservation_id).first()
    if already_linked is not None:
        logger.warning("Reservation %s already belongs to payout %s", reservation_id, already_linked.payout_id)
        reservation.payout_status = _reservation_payout_status(already_linked.payout.status)
        reservation.payout_id = already_linked.payout_id
        db.commit()
        return OUTCOME_SKIPPED

    owner_id = reservation.listing.owner_id
    account = get_account(db, owner_id)
    if account is None:
        return _hold(db, reservation, HELD_NO_ACCOUNT)
    if not account.is_payout_capable:
        return _hold(db, reservation, HELD_NOT_CAPABLE)

    if not _claim(db, reservation_id):
        return OUTCOME_SKIPPED
    db.refresh(reservation)

    try:
        result = gateway.create_payout(
            account.gateway_account_id,
            reservation.owner_amount,
            reservation.currency or settings.PLATFORM_CURRENCY,
            metadata={
                "reservation_id": str(reservation.id),
                "reservation_number": reservation.reservation_number,
            },
            idempotency_key=f"payout-{reservation.id}",
        )
    except GatewayTransientError as exc:
        logger.warning("Payout for %s deferred: %s", reservation.reservation_number, exc.message)
        reservation.payout_status = PayoutStatus.PENDING.value
        db.commit()
        return OUTCOME_RETRY
    except GatewayPermanentError as exc:
        logger.error(
            "Payout for %s rejected: %s (%s)", reservation.reservation_number, exc.message, exc.failure_code
        )
        payout = _record_payout(db, account, reservation, error=exc)
        reservation.payout_status = PayoutStatus.FAILED.value
        _notify_failure(db, payout, reservation)
        db.commit()
        return OUTCOME_FAILED

    try:
        payout = _record_payout(db, account, reservation, result=result)
    except IntegrityError:
        # Another worker recorded the same gateway payout first
        db.rollback()
        logger.warning("Payout for %s was recorded concurrently", reservation.reservation_number)
        return OUTCOME_SKIPPED

    reservation.payout_status = _reservation_payout_status(payout.status)
    if payout.status == PayoutRecordStatus.FAILED.value:
        _notify_failure(db, payout, reservation)
    else:
        events.publish(
            db,
            "payout.paid" if payout.status == PayoutRecordStatus.PAID.value else "payout.processing",
            {"payout_id": payout.id, "reservation_id": reservation.id, "amount": payout.amount},
            recipient_id=owner_id,
        )
    db.commit()
    logger.info(
        "Payout %s for %s: %s %s (%s)",
        payout.gateway_payout_id, reservation.reservation_number, payout.amount, payout.currency, payout.status,
    )
    return OUTCOME_PAID if payout.status == PayoutRecordStatus.PAID.value else (
        OUTCOME_FAILED if payout.status == PayoutRecordStatus.FAILED.value else OUTCOME_PROCESSING
    )


def run_settlement_sweep(db: Session, gateway: PaymentGateway, limit: Optional[int] = None) -> SweepResult:
    result = SweepResult()
    for reservation_id in payable_reservation_ids(db, limit):
        try:
            outcome = settle_reservation(db, gateway, reservation_id)
            result.record(reservation_id, outcome)
        except Exception as exc:
            db.rollback()
            logger.exception("Settlement of reservation %s failed", reservation_id)
            result.record(reservation_id, OUTCOME_FAILED, str(exc))
    logger.info(
        "Settlement sweep: processed=%d held=%d skipped=%d failed=%d",
        result.processed, result.held, result.skipped, result.failed,
    )
    return result


# ---------------------------------------------------------------------------
# Failed payout retry
# ---------------------------------------------------------------------------


def retry_failed_payouts(db: Session, gateway: PaymentGateway, now: Optional[datetime] = None) -> Dict[str, int]:
    """Retry recent failed payouts once; a second failure is escalated to admins."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=settings.FAILED_PAYOUT_RETRY_HOURS)
    payouts = (
        db.query(Payout)
        .filter(
            Payout.status == PayoutRecordStatus.FAILED.value,
            Payout.retry_count == 0,
            Payout.updated_at >= cutoff,
        )
        .all()
    )

    counts = {"retried": 0, "recovered": 0, "failed": 0, "deferred": 0}
    for payout in payouts:
        try:
            outcome = _retry_payout(db, gateway, payout)
        except Exception:
            db.rollback()
            logger.exception("Retry of payout %s failed", payout.id)
            outcome = "deferred"
        counts["retried"] += 1
        counts[outcome] += 1
    if payouts:
        logger.info("Failed payout retry: %s", counts)
    return counts


def _retry_payout(db: Session, gateway: PaymentGateway, payout: Payout) -> str:
    account = payout.payout_account
    reservations = [item.reservation for item in payout.items]
    if not account.is_payout_capable:
        logger.info("Skipping retry of payout %s: account not capable", payout.id)
        return "deferred"

    try:
        result = gateway.create_payout(
            account.gateway_account_id,
            payout.amount,
            payout.currency,
            metadata={"payout_id": str(payout.id), "reservation_ids": ",".join(str(r.id) for r in reservations)},
            # Fresh key: the original one would replay the recorded failure
            idempotency_key=f"payout-{payout.id}-retry-1",
            transfer_id=payout.gateway_transfer_id,
        )
    except GatewayTransientError:
        return "deferred"
    except GatewayPermanentError as exc:
        payout.retry_count += 1
        payout.failure_code = exc.failure_code
        payout.failure_message = exc.message
        payout.gateway_transfer_id = exc.transfer_id or payout.gateway_transfer_id
        for reservation in reservations:
            _notify_failure(db, payout, reservation, "payout.failed_permanently")
        db.commit()
        return "failed"

    payout.retry_count += 1
    payout.gateway_payout_id = result.payout_id
    payout.gateway_transfer_id = result.transfer_id
    payout.status = result.status
    payout.arrival_date = result.arrival_date
    payout.failure_code = result.failure_code
    payout.failure_message = result.failure_message
    for reservation in reservations:
        reservation.payout_status = _reservation_payout_status(result.status)
    if result.status == PayoutRecordStatus.FAILED.value:
        for reservation in reservations:
            _notify_failure(db, payout, reservation, "payout.failed_permanently")
        db.commit()
        return "failed"
    db.commit()
    return "recovered"


# ---------------------------------------------------------------------------
# Asynchronous gateway updates
# ---------------------------------------------------------------------------


def apply_payout_update(
    db: Session,
    gateway_payout_id: str,
    status: str,
    failure_code: Optional[str] = None,
    failure_message: Optional[str] = None,
    arrival_date: Optional[datetime] = None,
) -> Optional[Payout]:
    payout = db.query(Payout).filter(Payout.gateway_payout_id == gateway_payout_id).first()
    if payout is None:
        logger.warning("Status update for unknown gateway payout %s", gateway_payout_id)
        return None
    if payout.status == PayoutRecordStatus.PAID.value:
        if status != "paid":
            logger.warning("Ignoring %s update for paid payout %s", status, payout.id)
        return payout

    new_status = PAYOUT_STATUS_MAP.get(status, status)
    payout.status = new_status
    if arrival_date is not None:
        payout.arrival_date = arrival_date
    if new_status == PayoutRecordStatus.FAILED.value:
        payout.failure_code = failure_code or payout.failure_code
        payout.failure_message = failure_message or payout.failure_message

    owner_id = payout.payout_account.owner_id
    for item in payout.items:
        reservation = item.reservation
        reservation.payout_status = _reservation_payout_status(new_status)
        if new_status == PayoutRecordStatus.FAILED.value:
            _notify_failure(db, payout, reservation)

    if new_status == PayoutRecordStatus.PAID.value:
        events.publish(db, "payout.paid", {"payout_id": payout.id, "amount": payout.amount}, recipient_id=owner_id)
    db.commit()
    db.refresh(payout)
    logger.info("Payout %s is now %s", payout.id, payout.status)
    return payout


# ---------------------------------------------------------------------------
# Completion sweep
# ---------------------------------------------------------------------------


def complete_past_reservations(db: Session, now: Optional[datetime] = None) -> int:
    """Complete reservations whose end has passed; runs before the settlement sweep."""
    from slotrent.services.reservations import complete_reservation

    now = now or datetime.now()
    candidates = (
        db.query(Reservation)
        .filter(
            Reservation.date <= now.date(),
            or_(
                Reservation.status == ReservationStatus.CONFIRMED.value,
                and_(
                    Reservation.status == ReservationStatus.PENDING.value,
                    Reservation.payment_status == PaymentStatus.PAID.value,
                ),
            ),
        )
        .order_by(Reservation.date, Reservation.end_minute)
        .all()
    )

    completed = 0
    for reservation in candidates:
        if to_instant(reservation.date, reservation.end_minute) > now:
            continue
        try:
            if reservation.status == ReservationStatus.PENDING.value:
                reservation.status = ReservationStatus.CONFIRMED.value
            complete_reservation(db, reservation, now)
            completed += 1
        except Exception:
            db.rollback()
            logger.exception("Completing reservation %s failed", reservation.id)
    if completed:
        logger.info("Completed %d past reservation(s)", completed)
    return completed
