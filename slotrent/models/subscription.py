import uuid
import enum
from sqlalchemy import Column, String, Boolean, DateTime, Date, func, DECIMAL, Integer, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class RecurrenceInterval(str, enum.Enum):
    EVERYDAY = "everyday"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELED = "canceled"

class RecurringSubscription(Base):
    __tablename__ = "recurring_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False, index=True)
    consumer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    interval = Column(String(20), nullable=False) # everyday, weekly, monthly
    day_of_week = Column(Integer, nullable=True)  # 0 = Monday ... 6 = Sunday (weekly only)
    day_of_month = Column(Integer, nullable=True) # 1..31 (monthly only)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    price_per_occurrence = Column(DECIMAL(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    last_occurrence_date = Column(Date, nullable=True)
    gateway_reference = Column(String(255), nullable=True) # gateway subscription / payment intent id
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    # Relationships
    listing = relationship("Listing", back_populates="subscriptions")
    consumer = relationship("User")
    reservations = relationship("Reservation", back_populates="subscription")
