from uuid import UUID
from typing import Optional
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_owner
from slotrent.models.user import User
from slotrent.models.subscription import RecurrenceInterval
from slotrent.services import availability as availability_service
from slotrent.services import listings as listing_service
from slotrent.utils.timeslots import format_time, parse_time
from slotrent.schemas.common import ApiResponse
from slotrent.schemas.listing import Listing as ListingSchema, ListingCreate, ListingUpdate
from slotrent.schemas.availability import (
    AvailabilityCheck,
    DayAvailability,
    RecurringConflict,
    RecurringConflictReport,
    Slot,
)

router = APIRouter(prefix="/listings", tags=["Listings"])


# ---------------------------------------------------------------------------
# Owner management
# ---------------------------------------------------------------------------


@router.post("/", response_model=ApiResponse[ListingSchema], status_code=status.HTTP_201_CREATED)
def create_listing(
    data: ListingCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_owner),
):
    """Create a listing. Listings start unapproved unless created by an admin."""
    listing = listing_service.create_listing(db, current_user, data)
    return ApiResponse(data=ListingSchema.model_validate(listing), message="Listing created")


@router.patch("/{listing_id}", response_model=ApiResponse[ListingSchema])
def update_listing(
    listing_id: UUID,
    data: ListingUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_owner),
):
    listing = listing_service.get_listing(db, listing_id)
    listing = listing_service.update_listing(db, current_user, listing, data)
    return ApiResponse(data=ListingSchema.model_validate(listing))


@router.get("/{listing_id}", response_model=ApiResponse[ListingSchema])
def get_listing(listing_id: UUID, db: Session = Depends(get_db)):
    listing = listing_service.get_listing(db, listing_id)
    return ApiResponse(data=ListingSchema.model_validate(listing))


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@router.get("/{listing_id}/availability", response_model=ApiResponse[DayAvailability])
def get_availability(
    listing_id: UUID,
    date: date = Query(..., description="Calendar day, YYYY-MM-DD"),
    duration: Optional[int] = Query(None, description="Slot length in minutes (30 or 60)"),
    db: Session = Depends(get_db),
):
    """
    Slots from opening to closing time, each marked available or not.

    - `cause` is `reservation` for a direct booking and `recurring` for a
      projected occurrence of a recurring booking.
    - `display_end_time` is five minutes short of the real end (turnover buffer).
    """
    listing = listing_service.get_listing(db, listing_id)
    day = availability_service.get_slot_availability(db, listing, date, duration)
    return ApiResponse(
        data=DayAvailability(
            listing_id=day.listing_id,
            date=day.date,
            duration=day.duration,
            available_count=day.available_count,
            slots=[
                Slot(
                    start_time=format_time(s.start_minute),
                    end_time=format_time(s.end_minute),
                    display_end_time=format_time(s.display_end_minute),
                    start_minute=s.start_minute,
                    end_minute=s.end_minute,
                    label=s.label,
                    available=s.available,
                    cause=s.cause,
                    recurring_interval=s.recurring_interval,
                )
                for s in day.slots
            ],
        )
    )


@router.get("/{listing_id}/availability/check", response_model=ApiResponse[AvailabilityCheck])
def check_availability(
    listing_id: UUID,
    date: date = Query(...),
    start_time: str = Query(..., description="e.g. 14:00 or 2:00 PM"),
    end_time: str = Query(...),
    db: Session = Depends(get_db),
):
    check = availability_service.check_full_availability(
        db, listing_id, date, parse_time(start_time), parse_time(end_time)
    )
    return ApiResponse(
        data=AvailabilityCheck(available=check.available, reason=check.reason, conflict_type=check.conflict_type),
        message=check.reason,
    )


@router.get("/{listing_id}/recurring-conflicts", response_model=ApiResponse[RecurringConflictReport])
def recurring_conflicts(
    listing_id: UUID,
    date: date = Query(..., description="First occurrence date"),
    start_time: str = Query(...),
    end_time: str = Query(...),
    interval: RecurrenceInterval = Query(...),
    db: Session = Depends(get_db),
):
    """Existing bookings a recurring booking would collide with (those dates are skipped)."""
    listing_service.get_listing(db, listing_id)
    conflicts = availability_service.find_recurring_conflicts(
        db, listing_id, date, parse_time(start_time), parse_time(end_time), interval
    )
    return ApiResponse(
        data=RecurringConflictReport(
            has_conflicts=bool(conflicts),
            conflicts=[
                RecurringConflict(
                    reservation_id=c.reservation_id,
                    reservation_number=c.reservation_number,
                    date=c.date,
                    start_time=format_time(c.start_minute),
                    end_time=format_time(c.end_minute),
                )
                for c in conflicts
            ],
        )
    )
