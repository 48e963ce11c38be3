from typing import Optional
from pydantic import BaseModel, Field, UUID4
from datetime import datetime


class CommissionRateUpdate(BaseModel):
    rate: int = Field(ge=1, le=50)


class CommissionOverride(BaseModel):
    owner_id: UUID4
    rate: int
    updated_by: Optional[UUID4] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EffectiveCommission(BaseModel):
    owner_id: UUID4
    rate: int
    is_override: bool
    default_rate: int


class PlatformRules(BaseModel):
    default_commission_rate: int
    cancellation_window_hours: int
    max_advance_booking_days: int


class PlatformRulesUpdate(BaseModel):
    cancellation_window_hours: Optional[int] = Field(default=None, ge=0, le=24 * 14)
    max_advance_booking_days: Optional[int] = Field(default=None, ge=1, le=365)
