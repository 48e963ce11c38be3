import uuid
import enum
from sqlalchemy import Column, String, Boolean, DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class UserRole(str, enum.Enum):
    CONSUMER = "consumer"
    OWNER = "owner"
    ADMIN = "admin"

class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CONSUMER.value, index=True) # consumer, owner, admin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    # Relationships
    listings = relationship("Listing", back_populates="owner")
    payout_account = relationship("PayoutAccount", back_populates="owner", uselist=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value
