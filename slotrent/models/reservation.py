import uuid
import enum
from sqlalchemy import (
    Column, String, Boolean, DateTime, Date, func, DECIMAL, Integer, ForeignKey, Text, Index, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"

class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    HELD = "HELD"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"

# Payout statuses the settlement sweep may still act on (NULL is also claimable)
CLAIMABLE_PAYOUT_STATUSES = (PayoutStatus.PENDING.value, PayoutStatus.HELD.value)

_ACTIVE_SLOT = text("status <> 'CANCELLED'")

class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reservation_number = Column(String(20), unique=True, nullable=False, index=True)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=False, index=True)
    consumer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("recurring_subscriptions.id"), nullable=True, index=True)
    date = Column(Date, nullable=False, index=True)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)

    # Money: stored amounts are authoritative once outside the mutable window
    gross_amount = Column(DECIMAL(10, 2), nullable=False)
    owner_amount = Column(DECIMAL(10, 2), nullable=False)
    platform_amount = Column(DECIMAL(10, 2), nullable=False)
    commission_rate = Column(Integer, nullable=False)
    currency = Column(String(3), default="gbp")

    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_reference = Column(String(255), nullable=True)
    # What the consumer was actually charged; refunds never exceed it
    paid_amount = Column(DECIMAL(10, 2), nullable=True)
    # Unpaid PENDING reservations release their slot after this instant
    payment_due_at = Column(DateTime(timezone=True), nullable=True, index=True)
    refund_amount = Column(DECIMAL(10, 2), nullable=True)
    payout_status = Column(String(20), nullable=True, index=True)
    payout_held_reason = Column(Text, nullable=True)
    payout_id = Column(UUID(as_uuid=True), ForeignKey("payouts.id"), nullable=True)
    # Late consumer cancellation: no refund, owner still paid their share
    owner_payout_on_cancel = Column(Boolean, default=False, nullable=False)

    reschedule_count = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    cancelled_by = Column(String(20), nullable=True) # consumer, owner, admin, system
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        # Storage-level guard against double booking of the exact same window
        Index(
            "uq_reservations_active_slot",
            "listing_id", "date", "start_minute", "end_minute",
            unique=True,
            postgresql_where=_ACTIVE_SLOT,
            sqlite_where=_ACTIVE_SLOT,
        ),
    )

    # Relationships
    listing = relationship("Listing", back_populates="reservations")
    consumer = relationship("User")
    subscription = relationship("RecurringSubscription", back_populates="reservations")
    payout = relationship("Payout", foreign_keys=[payout_id])
