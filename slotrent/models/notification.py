import uuid
import enum
from sqlalchemy import Column, String, Boolean, DateTime, func, Integer, ForeignKey, Text, JSON
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class EventStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

class OutboundEvent(Base):
    """Side-channel work (notifications, live pushes) written in the same transaction as the core change."""

    __tablename__ = "outbound_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(100), nullable=False, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    payload = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=EventStatus.PENDING.value, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False) # reservation.created, payout.held, ...
    is_read = Column(Boolean, default=False)
    reference_id = Column(UUID(as_uuid=True), nullable=True) # Reservation ID, Payout ID, etc.
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")
