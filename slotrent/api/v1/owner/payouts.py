from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_owner
from slotrent.models.user import User
from slotrent.services import payout_accounts as account_service
from slotrent.services.earnings import owner_earnings
from slotrent.services.gateway import PaymentGateway, get_gateway
from slotrent.schemas.common import ApiResponse, PaginatedResponse
from slotrent.schemas.payout import (
    Balance,
    Earnings,
    Payout as PayoutSchema,
    PayoutAccount as PayoutAccountSchema,
    PayoutAccountRefresh,
)

router = APIRouter(prefix="/owner", tags=["Owner payouts"])


# ---------------------------------------------------------------------------
# Payout account
# ---------------------------------------------------------------------------


@router.post("/payout-account", response_model=ApiResponse[PayoutAccountSchema], status_code=status.HTTP_201_CREATED)
def create_payout_account(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_owner),
):
    """Register with the payment gateway. Returns the existing account if already registered."""
    account = account_service.create_payout_account(db, gateway, current_user)
    return ApiResponse(data=PayoutAccountSchema.model_validate(account))


@router.get("/payout-account", response_model=ApiResponse[PayoutAccountSchema])
def get_payout_account(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_owner),
):
    account = account_service.require_account(db, current_user.id)
    return ApiResponse(data=PayoutAccountSchema.model_validate(account))


@router.post("/payout-account/refresh", response_model=ApiResponse[PayoutAccountRefresh])
def refresh_payout_account(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_owner),
):
    """Re-read capabilities from the gateway; held payouts are released once payouts are enabled."""
    account, became_capable, released = account_service.refresh_account_status(db, gateway, current_user)
    return ApiResponse(
        data=PayoutAccountRefresh(
            account=PayoutAccountSchema.model_validate(account),
            became_capable=became_capable,
            released_count=released,
        )
    )


@router.get("/payout-account/balance", response_model=ApiResponse[Balance])
def get_balance(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_owner),
):
    account = account_service.require_account(db, current_user.id)
    balance = account_service.get_balance(gateway, account)
    return ApiResponse(data=Balance(available=balance.available, pending=balance.pending, currency=balance.currency))


# ---------------------------------------------------------------------------
# History / earnings
# ---------------------------------------------------------------------------


@router.get("/payouts", response_model=ApiResponse[PaginatedResponse[PayoutSchema]])
def list_payouts(
    status: Optional[str] = Query(None, description="pending, processing, paid or failed"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_owner),
):
    items, total = account_service.list_payouts(db, current_user.id, status, page, limit)
    return ApiResponse(
        data=PaginatedResponse.build([PayoutSchema.model_validate(p) for p in items], total, page, limit)
    )


@router.get("/earnings", response_model=ApiResponse[Earnings])
def get_earnings(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_owner),
):
    earnings = owner_earnings(db, current_user.id)
    return ApiResponse(
        data=Earnings(
            currency=earnings.currency,
            paid=earnings.paid,
            processing=earnings.processing,
            held=earnings.held,
            pending=earnings.pending,
            upcoming=earnings.upcoming,
        )
    )
