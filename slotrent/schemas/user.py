from typing import Optional
from pydantic import BaseModel, EmailStr, UUID4
from datetime import datetime


# Properties to receive via API on update (PATCH /me)
class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None


class User(BaseModel):
    id: UUID4
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    role: str
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
