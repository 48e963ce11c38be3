from uuid import UUID
from typing import Optional
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_admin_user
from slotrent.models.user import User
from slotrent.services import listings as listing_service
from slotrent.services.earnings import daily_payout_summary
from slotrent.services.events import dispatch_pending_events
from slotrent.services.gateway import PaymentGateway, get_gateway
from slotrent.services.payout_accounts import list_payouts, release_held_for_capable_accounts
from slotrent.services.reservations import expire_unpaid_reservations
from slotrent.services.settlement import complete_past_reservations, retry_failed_payouts, run_settlement_sweep
from slotrent.schemas.common import ApiResponse, PaginatedResponse
from slotrent.schemas.listing import Listing as ListingSchema
from slotrent.schemas.payout import DailySummary, Payout as PayoutSchema, SweepResult

router = APIRouter(prefix="/admin", tags=["Admin - Operations"])


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


@router.patch("/listings/{listing_id}/approval", response_model=ApiResponse[ListingSchema])
def set_listing_approval(
    listing_id: UUID,
    approved: bool = Query(True),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    listing = listing_service.get_listing(db, listing_id)
    listing = listing_service.set_approval(db, listing, approved, current_user)
    return ApiResponse(data=ListingSchema.model_validate(listing))


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------


@router.get("/payouts", response_model=ApiResponse[PaginatedResponse[PayoutSchema]])
def list_all_payouts(
    status: Optional[str] = Query(None, description="pending, processing, paid or failed"),
    owner_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    items, total = list_payouts(db, owner_id, status, page, limit)
    return ApiResponse(
        data=PaginatedResponse.build([PayoutSchema.model_validate(p) for p in items], total, page, limit)
    )


# ---------------------------------------------------------------------------
# Manual job triggers
# ---------------------------------------------------------------------------


@router.post("/jobs/completion", response_model=ApiResponse[dict])
def trigger_completion(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    completed = complete_past_reservations(db)
    return ApiResponse(data={"completed": completed})


@router.post("/jobs/expiry", response_model=ApiResponse[dict])
def trigger_hold_expiry(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """Release slots held by reservations whose payment deadline has passed."""
    expired = expire_unpaid_reservations(db)
    return ApiResponse(data={"expired": expired})


@router.post("/jobs/settlement", response_model=ApiResponse[SweepResult])
def trigger_settlement(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_admin_user),
):
    """Run one settlement cycle now: release holds, sweep, retry recent failures."""
    released = release_held_for_capable_accounts(db)
    result = run_settlement_sweep(db, gateway)
    retried = retry_failed_payouts(db, gateway)
    return ApiResponse(
        data=SweepResult(
            processed=result.processed,
            held=result.held,
            skipped=result.skipped,
            failed=result.failed,
            details=result.details,
        ),
        message=f"Released {released} held payout(s); retried {retried['retried']} failed payout(s)",
    )


@router.post("/jobs/reconciliation", response_model=ApiResponse[DailySummary])
def trigger_reconciliation(
    day: Optional[date] = Query(None, description="Defaults to yesterday (UTC)"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    summary = daily_payout_summary(db, day)
    return ApiResponse(
        data=DailySummary(date=summary.date, count=summary.count, amount=summary.amount, by_owner=summary.by_owner)
    )


@router.post("/jobs/events", response_model=ApiResponse[dict])
def trigger_event_dispatch(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return ApiResponse(data=dispatch_pending_events(db))
