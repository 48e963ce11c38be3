from typing import Optional
from pydantic import BaseModel, Field, UUID4, field_validator
from decimal import Decimal
from datetime import datetime

from slotrent.schemas.times import parse_time_field


# Listing: Create (POST /listings)
class ListingCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    city: Optional[str] = None
    opening_time: int
    closing_time: int
    slot_minutes: int = 60
    price_per_slot: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: Optional[str] = None

    @field_validator("opening_time", "closing_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_time_field(v)

    @field_validator("slot_minutes")
    @classmethod
    def check_slot_minutes(cls, v):
        if v not in (30, 60):
            raise ValueError("slot_minutes must be 30 or 60")
        return v


# Listing: Update (PATCH /listings/{id})
class ListingUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    city: Optional[str] = None
    opening_time: Optional[int] = None
    closing_time: Optional[int] = None
    slot_minutes: Optional[int] = None
    price_per_slot: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    is_active: Optional[bool] = None

    @field_validator("opening_time", "closing_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_time_field(v)

    @field_validator("slot_minutes")
    @classmethod
    def check_slot_minutes(cls, v):
        if v is not None and v not in (30, 60):
            raise ValueError("slot_minutes must be 30 or 60")
        return v


class Listing(BaseModel):
    id: UUID4
    owner_id: UUID4
    name: str
    description: Optional[str] = None
    city: Optional[str] = None
    opening_minute: int
    closing_minute: int
    slot_minutes: int
    price_per_slot: Decimal
    currency: str
    is_active: bool
    is_approved: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
