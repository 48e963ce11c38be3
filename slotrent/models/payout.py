import uuid
import enum
from sqlalchemy import Column, String, Boolean, DateTime, func, DECIMAL, Integer, ForeignKey, Text, JSON
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from slotrent.db.session import Base

class PayoutRecordStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"

class PayoutAccount(Base):
    __tablename__ = "payout_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False)
    gateway_account_id = Column(String(255), unique=True, nullable=False, index=True)
    charges_enabled = Column(Boolean, default=False, nullable=False)
    payouts_enabled = Column(Boolean, default=False, nullable=False)
    details_submitted = Column(Boolean, default=False, nullable=False)
    requirements = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=True) # outstanding gateway requirements
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    owner = relationship("User", back_populates="payout_account")
    payouts = relationship("Payout", back_populates="payout_account")

    @property
    def is_payout_capable(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled)

class Payout(Base):
    __tablename__ = "payouts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payout_account_id = Column(UUID(as_uuid=True), ForeignKey("payout_accounts.id"), nullable=False, index=True)
    gateway_payout_id = Column(String(255), unique=True, nullable=True, index=True)
    gateway_transfer_id = Column(String(255), nullable=True)
    amount = Column(DECIMAL(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PayoutRecordStatus.PENDING.value, index=True)
    failure_code = Column(String(100), nullable=True)
    failure_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    arrival_date = Column(DateTime(timezone=True), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    payout_account = relationship("PayoutAccount", back_populates="payouts")
    items = relationship("PayoutReservation", back_populates="payout", cascade="all, delete-orphan")

    @property
    def reservation_ids(self):
        return [item.reservation_id for item in self.items]

class PayoutReservation(Base):
    """Links a payout to the reservations it covers. A reservation is paid by at most one payout."""

    __tablename__ = "payout_reservations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payout_id = Column(UUID(as_uuid=True), ForeignKey("payouts.id"), nullable=False, index=True)
    reservation_id = Column(UUID(as_uuid=True), ForeignKey("reservations.id"), unique=True, nullable=False)

    payout = relationship("Payout", back_populates="items")
    reservation = relationship("Reservation")
