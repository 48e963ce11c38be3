from typing import Optional
from pydantic import BaseModel, Field, UUID4, field_validator, model_validator
from decimal import Decimal
from datetime import date, datetime

from slotrent.models.subscription import RecurrenceInterval
from slotrent.schemas.times import parse_time_field


# Subscription: Create (POST /subscriptions)
class SubscriptionCreate(BaseModel):
    listing_id: UUID4
    interval: RecurrenceInterval
    start_date: date
    start_time: int
    end_time: int
    payment_reference: str = Field(min_length=1, max_length=255)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_times(cls, v):
        return parse_time_field(v)

    @model_validator(mode="after")
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


# Subscription: Cancel (POST /subscriptions/{id}/cancel)
class SubscriptionCancel(BaseModel):
    immediately: bool = False


class Subscription(BaseModel):
    id: UUID4
    listing_id: UUID4
    consumer_id: UUID4
    interval: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    start_minute: int
    end_minute: int
    price_per_occurrence: Decimal
    status: str
    cancel_at_period_end: bool
    last_occurrence_date: Optional[date] = None
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
