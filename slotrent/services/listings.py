import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from slotrent.core.config import settings
from slotrent.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from slotrent.models.listing import Listing
from slotrent.models.user import User, UserRole
from slotrent.utils.timeslots import MINUTES_PER_DAY

logger = logging.getLogger(__name__)


def validate_operating_hours(opening_minute: int, closing_minute: int) -> None:
    if not 0 <= opening_minute < closing_minute <= MINUTES_PER_DAY:
        raise ValidationError("Closing time must be after opening time on the same day")
    if closing_minute - opening_minute < settings.MIN_OPERATING_MINUTES:
        hours = settings.MIN_OPERATING_MINUTES / 60
        raise ValidationError(f"Listings must be open for at least {hours:g} hours")


def get_listing(db: Session, listing_id: UUID) -> Listing:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise NotFoundError("Listing not found")
    return listing


def create_listing(db: Session, owner: User, data) -> Listing:
    if owner.role not in (UserRole.OWNER.value, UserRole.ADMIN.value):
        raise AuthorizationError("Only owners can create listings")
    validate_operating_hours(data.opening_time, data.closing_time)

    listing = Listing(
        owner_id=owner.id,
        name=data.name,
        description=data.description,
        city=data.city,
        opening_minute=data.opening_time,
        closing_minute=data.closing_time,
        slot_minutes=data.slot_minutes,
        price_per_slot=data.price_per_slot,
        currency=(data.currency or settings.PLATFORM_CURRENCY).lower(),
        is_active=True,
        is_approved=owner.role == UserRole.ADMIN.value,
    )
    db.add(listing)
    db.commit()
    db.refresh(listing)
    logger.info("Listing %s created by %s", listing.id, owner.id)
    return listing


def update_listing(db: Session, actor: User, listing: Listing, data) -> Listing:
    if actor.role != UserRole.ADMIN.value and listing.owner_id != actor.id:
        raise AuthorizationError("You do not own this listing")

    changes = data.model_dump(exclude_unset=True)
    opening = changes.pop("opening_time", None)
    closing = changes.pop("closing_time", None)
    opening = listing.opening_minute if opening is None else opening
    closing = listing.closing_minute if closing is None else closing
    validate_operating_hours(opening, closing)

    listing.opening_minute = opening
    listing.closing_minute = closing
    for field, value in changes.items():
        if value is not None:
            setattr(listing, field, value)
    db.commit()
    db.refresh(listing)
    return listing


def set_approval(db: Session, listing: Listing, approved: bool, admin: Optional[User] = None) -> Listing:
    listing.is_approved = approved
    db.commit()
    db.refresh(listing)
    logger.info("Listing %s approval set to %s by %s", listing.id, approved, admin.id if admin else None)
    return listing
