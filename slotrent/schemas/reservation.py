from typing import Optional
from pydantic import BaseModel, Field, UUID4, field_validator, model_validator
from decimal import Decimal
from datetime import date, datetime

from slotrent.models.reservation import ReservationStatus
from slotrent.schemas.times import parse_time_field


class _TimeWindow(BaseModel):
    date: date
    # Minute-of-day after validation; input may be "9:00", "2:30 PM" or an int
    start_time: int
    end_time: int

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_time_field(v)

    @model_validator(mode="after")
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


# Reservation: Create (POST /reservations)
class ReservationCreate(_TimeWindow):
    listing_id: UUID4
    notes: Optional[str] = Field(default=None, max_length=1000)


# Reservation: Reschedule (PATCH /reservations/{id}/reschedule)
class ReservationReschedule(_TimeWindow):
    pass


# Reservation: Status (PATCH /reservations/{id}/status)
class ReservationStatusUpdate(BaseModel):
    status: ReservationStatus
    reason: Optional[str] = Field(default=None, max_length=500)


# Reservation: Cancel (POST /reservations/{id}/cancel)
class ReservationCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# Reservation: Payment callback (POST /reservations/{id}/payment)
class ReservationPayment(BaseModel):
    payment_reference: str = Field(min_length=1, max_length=255)


# Reservation: Full response
class Reservation(BaseModel):
    id: UUID4
    reservation_number: str
    listing_id: UUID4
    consumer_id: UUID4
    subscription_id: Optional[UUID4] = None
    date: date
    start_minute: int
    end_minute: int
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    gross_amount: Decimal
    owner_amount: Decimal
    platform_amount: Decimal
    commission_rate: int
    currency: str
    status: str
    payment_status: str
    paid_amount: Optional[Decimal] = None
    payment_due_at: Optional[datetime] = None
    payout_status: Optional[str] = None
    payout_held_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    owner_payout_on_cancel: bool = False
    reschedule_count: int
    notes: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RefundEligibility(BaseModel):
    eligible: bool
    hours_until_start: float
    window_hours: int
    refund_amount: Decimal
