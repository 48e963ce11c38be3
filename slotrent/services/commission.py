"""
Commission calculation.

The rate is the whole percentage the platform keeps. A per-owner override
wins over the platform default and is resolved at calculation time only.

  gross 100.00 at 20%  ->  platform 20.00, owner 80.00
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from slotrent.core.exceptions import ValidationError
from slotrent.models.commission import CommissionOverride
from slotrent.models.reservation import Reservation, ReservationStatus
from slotrent.services.platform_settings import get_rules, update_rules
from slotrent.utils.timeslots import hours_until

logger = logging.getLogger(__name__)

MIN_RATE = 1
MAX_RATE = 50
CENT = Decimal("0.01")


@dataclass(frozen=True)
class CommissionBreakdown:
    gross_amount: Decimal
    owner_amount: Decimal
    platform_amount: Decimal
    rate_used: int
    is_override: bool = False


def round2(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_rate(rate) -> int:
    if isinstance(rate, bool) or not isinstance(rate, int) or not MIN_RATE <= rate <= MAX_RATE:
        raise ValidationError(
            f"Commission rate must be a whole number between {MIN_RATE} and {MAX_RATE}"
        )
    return rate


def split(gross, rate: int, is_override: bool = False) -> CommissionBreakdown:
    """Pure split of a gross amount; owner + platform always equals gross."""
    validate_rate(rate)
    gross = round2(gross)
    if gross < 0:
        raise ValidationError("Gross amount cannot be negative")
    platform_amount = round2(gross * rate / 100)
    owner_amount = round2(gross - platform_amount)
    return CommissionBreakdown(
        gross_amount=gross,
        owner_amount=owner_amount,
        platform_amount=platform_amount,
        rate_used=rate,
        is_override=is_override,
    )


def resolve_rate(db: Session, owner_id: UUID) -> Tuple[int, bool, int]:
    """Return (effective rate, is_override, platform default)."""
    default_rate = get_rules(db).default_commission_rate
    override = (
        db.query(CommissionOverride)
        .filter(CommissionOverride.owner_id == owner_id)
        .first()
    )
    if override is not None:
        return override.rate, True, default_rate
    return default_rate, False, default_rate


def calculate(db: Session, gross, owner_id: UUID) -> CommissionBreakdown:
    rate, is_override, _ = resolve_rate(db, owner_id)
    return split(gross, rate, is_override)


def amounts_are_locked(db: Session, reservation: Reservation, now: Optional[datetime] = None) -> bool:
    """Stored amounts are authoritative once completed, cancelled or inside the cancellation window."""
    if reservation.status in (ReservationStatus.COMPLETED.value, ReservationStatus.CANCELLED.value):
        return True
    now = now or datetime.now()
    window = get_rules(db).cancellation_window_hours
    return hours_until(reservation.date, reservation.start_minute, now) < window


def amounts_for_display(db: Session, reservation: Reservation, now: Optional[datetime] = None) -> CommissionBreakdown:
    if amounts_are_locked(db, reservation, now):
        return CommissionBreakdown(
            gross_amount=round2(reservation.gross_amount),
            owner_amount=round2(reservation.owner_amount),
            platform_amount=round2(reservation.platform_amount),
            rate_used=reservation.commission_rate,
        )
    return calculate(db, reservation.gross_amount, reservation.listing.owner_id)


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------


def set_override(db: Session, owner_id: UUID, rate: int, admin_id: Optional[UUID] = None) -> CommissionOverride:
    validate_rate(rate)
    override = (
        db.query(CommissionOverride)
        .filter(CommissionOverride.owner_id == owner_id)
        .first()
    )
    if override is None:
        override = CommissionOverride(owner_id=owner_id, rate=rate, updated_by=admin_id)
        db.add(override)
    else:
        override.rate = rate
        override.updated_by = admin_id
    db.commit()
    db.refresh(override)
    logger.info("Commission override for owner %s set to %d%%", owner_id, rate)
    return override


def clear_override(db: Session, owner_id: UUID) -> bool:
    deleted = (
        db.query(CommissionOverride)
        .filter(CommissionOverride.owner_id == owner_id)
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return bool(deleted)


def set_default_rate(db: Session, rate: int) -> int:
    validate_rate(rate)
    return update_rules(db, default_commission_rate=rate).default_commission_rate
