from uuid import UUID
from typing import Optional
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_user
from slotrent.models.user import User
from slotrent.models.reservation import Reservation
from slotrent.services import reservations as reservation_service
from slotrent.services.gateway import PaymentGateway, get_gateway
from slotrent.utils.timeslots import format_time
from slotrent.schemas.common import ApiResponse, PaginatedResponse
from slotrent.schemas.reservation import (
    Reservation as ReservationSchema,
    ReservationCancel,
    ReservationCreate,
    ReservationPayment,
    ReservationReschedule,
    ReservationStatusUpdate,
    RefundEligibility,
)

router = APIRouter(prefix="/reservations", tags=["Reservations"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def serialize_reservation(reservation: Reservation) -> ReservationSchema:
    out = ReservationSchema.model_validate(reservation)
    out.start_time = format_time(reservation.start_minute)
    out.end_time = format_time(reservation.end_minute)
    return out


# ---------------------------------------------------------------------------
# POST /reservations: create
# ---------------------------------------------------------------------------


@router.post("/", response_model=ApiResponse[ReservationSchema], status_code=status.HTTP_201_CREATED)
def create_reservation(
    data: ReservationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Reserve a window on a listing.

    - The window must sit inside opening hours and cover whole slot units.
    - Fails with 409 when it overlaps a booking or a recurring booking's occurrence.
    - Price and commission split are fixed at creation.
    """
    reservation = reservation_service.create_reservation(db, current_user, data)
    return ApiResponse(data=serialize_reservation(reservation), message="Reservation created")


# ---------------------------------------------------------------------------
# GET /reservations: list
# ---------------------------------------------------------------------------


@router.get("/", response_model=ApiResponse[PaginatedResponse[ReservationSchema]])
def list_reservations(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    status: Optional[str] = Query(None, description="PENDING, CONFIRMED, COMPLETED or CANCELLED"),
    listing_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Consumers see their own reservations, owners those on their listings, admins all."""
    items, total = reservation_service.list_reservations(
        db, current_user, date_from, date_to, status, listing_id, page, limit
    )
    return ApiResponse(
        data=PaginatedResponse.build([serialize_reservation(r) for r in items], total, page, limit)
    )


@router.get("/{reservation_id}", response_model=ApiResponse[ReservationSchema])
def get_reservation(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    return ApiResponse(data=serialize_reservation(reservation))


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.patch("/{reservation_id}/status", response_model=ApiResponse[ReservationSchema])
def update_status(
    reservation_id: UUID,
    data: ReservationStatusUpdate,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
):
    """Confirm or complete (owner/admin). CANCELLED is routed through the cancellation rules."""
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    reservation = reservation_service.update_status(
        db, gateway, current_user, reservation, data.status, data.reason
    )
    return ApiResponse(data=serialize_reservation(reservation))


@router.post("/{reservation_id}/cancel", response_model=ApiResponse[ReservationSchema])
def cancel_reservation(
    reservation_id: UUID,
    data: Optional[ReservationCancel] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
):
    """
    Cancel a reservation.

    - At least the cancellation window ahead of start: full refund.
    - Later than that (consumer): no refund, the owner is paid their share.
    - Owner or admin cancellations are always refunded in full.
    """
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    reservation = reservation_service.cancel_reservation(
        db, gateway, current_user, reservation, data.reason if data else None
    )
    refunded = reservation.refund_amount is not None
    return ApiResponse(
        data=serialize_reservation(reservation),
        message="Reservation cancelled, refund issued" if refunded else "Reservation cancelled",
    )


@router.get("/{reservation_id}/refund-eligibility", response_model=ApiResponse[RefundEligibility])
def refund_eligibility(
    reservation_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    result = reservation_service.refund_eligibility(db, reservation)
    return ApiResponse(
        data=RefundEligibility(
            eligible=result.eligible,
            hours_until_start=result.hours_until_start,
            window_hours=result.window_hours,
            refund_amount=result.refund_amount,
        )
    )


@router.patch("/{reservation_id}/reschedule", response_model=ApiResponse[ReservationSchema])
def reschedule_reservation(
    reservation_id: UUID,
    data: ReservationReschedule,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Move the reservation to a new window (at most three times).

    Only allowed while the start is outside the cancellation window. A paid
    reservation keeps its price and can only move to a window of the same length.
    """
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    reservation = reservation_service.reschedule_reservation(db, current_user, reservation, data)
    return ApiResponse(data=serialize_reservation(reservation), message="Reservation rescheduled")


@router.post("/{reservation_id}/payment", response_model=ApiResponse[ReservationSchema])
def record_payment(
    reservation_id: UUID,
    data: ReservationPayment,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Payment callback from the checkout flow; idempotent for the same reference."""
    reservation = reservation_service.get_reservation(db, reservation_id, current_user)
    reservation = reservation_service.record_payment(db, reservation, data.payment_reference)
    return ApiResponse(data=serialize_reservation(reservation))
