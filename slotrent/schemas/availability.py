from typing import List, Optional
from pydantic import BaseModel, UUID4
from datetime import date


class Slot(BaseModel):
    start_time: str
    end_time: str
    display_end_time: str
    start_minute: int
    end_minute: int
    label: str
    available: bool
    cause: Optional[str] = None # reservation, recurring
    recurring_interval: Optional[str] = None


class DayAvailability(BaseModel):
    listing_id: UUID4
    date: date
    duration: int
    available_count: int
    slots: List[Slot]


class AvailabilityCheck(BaseModel):
    available: bool
    reason: Optional[str] = None
    conflict_type: Optional[str] = None


class RecurringConflict(BaseModel):
    reservation_id: UUID4
    reservation_number: str
    date: date
    start_time: str
    end_time: str


class RecurringConflictReport(BaseModel):
    has_conflicts: bool
    conflicts: List[RecurringConflict]
