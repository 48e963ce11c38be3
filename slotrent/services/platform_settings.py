from dataclasses import dataclass

from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.models.commission import PlatformSettings


@dataclass(frozen=True)
class MarketplaceRules:
    default_commission_rate: int
    cancellation_window_hours: int
    max_advance_booking_days: int


def get_rules(db: Session) -> MarketplaceRules:
    """Admin-adjusted values from the platform_settings row, env defaults otherwise."""
    row = db.get(PlatformSettings, 1)
    return MarketplaceRules(
        default_commission_rate=(
            row.default_commission_rate
            if row and row.default_commission_rate is not None
            else settings.DEFAULT_COMMISSION_RATE
        ),
        cancellation_window_hours=(
            row.cancellation_window_hours
            if row and row.cancellation_window_hours is not None
            else settings.CANCELLATION_WINDOW_HOURS
        ),
        max_advance_booking_days=(
            row.max_advance_booking_days
            if row and row.max_advance_booking_days is not None
            else settings.MAX_ADVANCE_BOOKING_DAYS
        ),
    )


def update_rules(db: Session, **values) -> MarketplaceRules:
    row = db.get(PlatformSettings, 1)
    if row is None:
        row = PlatformSettings(id=1)
        db.add(row)
    for field, value in values.items():
        if value is not None:
            setattr(row, field, value)
    db.commit()
    return get_rules(db)
