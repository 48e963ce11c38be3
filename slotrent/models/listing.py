import uuid
from sqlalchemy import Column, String, Boolean, DateTime, func, DECIMAL, Integer, ForeignKey, Text, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class Listing(Base):
    __tablename__ = "listings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    city = Column(String(100), nullable=True, index=True)
    # Operating hours as minute-of-day (0..1440)
    opening_minute = Column(Integer, nullable=False)
    closing_minute = Column(Integer, nullable=False)
    slot_minutes = Column(Integer, nullable=False, default=60) # 30 or 60
    price_per_slot = Column(DECIMAL(10, 2), nullable=False)
    currency = Column(String(3), default="gbp")
    is_active = Column(Boolean, default=True, index=True)
    is_approved = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        CheckConstraint("slot_minutes IN (30, 60)", name="ck_listings_slot_minutes"),
        CheckConstraint("closing_minute > opening_minute", name="ck_listings_hours_order"),
    )

    # Relationships
    owner = relationship("User", back_populates="listings")
    reservations = relationship("Reservation", back_populates="listing")
    subscriptions = relationship("RecurringSubscription", back_populates="listing")
