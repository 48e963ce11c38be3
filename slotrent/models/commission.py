import uuid
from sqlalchemy import Column, DateTime, func, Integer, ForeignKey, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class CommissionOverride(Base):
    __tablename__ = "commission_overrides"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False)
    rate = Column(Integer, nullable=False) # whole percent the platform keeps
    updated_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        CheckConstraint("rate BETWEEN 1 AND 50", name="ck_commission_overrides_rate"),
    )

    owner = relationship("User", foreign_keys=[owner_id])

class PlatformSettings(Base):
    """Single-row table of admin-adjustable marketplace values."""

    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True, default=1)
    default_commission_rate = Column(Integer, nullable=True)
    cancellation_window_hours = Column(Integer, nullable=True)
    max_advance_booking_days = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
