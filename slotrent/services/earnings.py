import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.models.listing import Listing
from slotrent.models.payout import Payout, PayoutAccount
from slotrent.models.reservation import PaymentStatus, PayoutStatus, Reservation, ReservationStatus
from slotrent.services import events
from slotrent.services.commission import round2
from slotrent.services.platform_settings import get_rules
from slotrent.utils.timeslots import hours_until

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class DailySummary:
    date: date
    count: int = 0
    amount: Decimal = ZERO
    by_owner: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class OwnerEarnings:
    currency: str
    paid: Decimal = ZERO
    processing: Decimal = ZERO
    held: Decimal = ZERO
    pending: Decimal = ZERO
    upcoming: Decimal = ZERO


def daily_payout_summary(db: Session, day: Optional[date] = None, publish: bool = True) -> DailySummary:
    """Payouts created on ``day`` (UTC), grouped by owner. Defaults to yesterday."""
    day = day or (datetime.now(timezone.utc).date() - timedelta(days=1))
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    rows = (
        db.query(PayoutAccount.owner_id, func.count(Payout.id), func.sum(Payout.amount))
        .join(PayoutAccount, Payout.payout_account_id == PayoutAccount.id)
        .filter(Payout.created_at >= start, Payout.created_at < end)
        .group_by(PayoutAccount.owner_id)
        .all()
    )

    summary = DailySummary(date=day)
    for owner_id, count, amount in rows:
        amount = round2(amount or 0)
        summary.count += count
        summary.amount += amount
        summary.by_owner[str(owner_id)] = amount

    if publish:
        events.publish_to_admins(
            db,
            "payout.daily_summary",
            {"date": day.isoformat(), "count": summary.count, "amount": summary.amount},
        )
        db.commit()
    logger.info("Payout summary for %s: %d payout(s), %s total", day, summary.count, summary.amount)
    return summary


def owner_earnings(db: Session, owner_id: UUID, now: Optional[datetime] = None) -> OwnerEarnings:
    """
    Owner-share totals by settlement stage. ``upcoming`` covers paid
    reservations inside the cancellation window that have not finished yet;
    their amounts can no longer be refunded to the consumer.
    """
    now = now or datetime.now()
    window = get_rules(db).cancellation_window_hours
    earnings = OwnerEarnings(currency=settings.PLATFORM_CURRENCY)

    reservations = (
        db.query(Reservation)
        .join(Listing, Reservation.listing_id == Listing.id)
        .filter(
            Listing.owner_id == owner_id,
            Reservation.payment_status == PaymentStatus.PAID.value,
        )
        .all()
    )
    for r in reservations:
        amount = round2(r.owner_amount)
        if r.payout_status == PayoutStatus.PAID.value:
            earnings.paid += amount
        elif r.payout_status == PayoutStatus.PROCESSING.value:
            earnings.processing += amount
        elif r.payout_status == PayoutStatus.HELD.value:
            earnings.held += amount
        elif r.payout_status == PayoutStatus.PENDING.value:
            earnings.pending += amount
        elif r.status in (ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value):
            if hours_until(r.date, r.start_minute, now) < window:
                earnings.upcoming += amount
    return earnings
