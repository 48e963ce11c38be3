from typing import Dict, List, Optional
from pydantic import BaseModel, UUID4
from decimal import Decimal
from datetime import date, datetime


class PayoutAccount(BaseModel):
    id: UUID4
    owner_id: UUID4
    gateway_account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    is_payout_capable: bool
    requirements: Optional[List[str]] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutAccountRefresh(BaseModel):
    account: PayoutAccount
    became_capable: bool
    released_count: int


class Balance(BaseModel):
    available: Decimal
    pending: Decimal
    currency: str


class Payout(BaseModel):
    id: UUID4
    payout_account_id: UUID4
    gateway_payout_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    retry_count: int
    arrival_date: Optional[datetime] = None
    reservation_ids: List[UUID4] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Earnings(BaseModel):
    currency: str
    paid: Decimal
    processing: Decimal
    held: Decimal
    pending: Decimal
    upcoming: Decimal


class SweepResult(BaseModel):
    processed: int
    held: int
    skipped: int
    failed: int
    details: List[Dict[str, str]] = []


class DailySummary(BaseModel):
    date: date
    count: int
    amount: Decimal
    by_owner: Dict[str, Decimal]
