from typing import Optional
from pydantic import BaseModel, UUID4
from datetime import datetime


class Notification(BaseModel):
    id: UUID4
    user_id: UUID4
    title: str
    message: str
    type: str # reservation.created, payout.held, ...
    reference_id: Optional[UUID4] = None
    is_read: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
