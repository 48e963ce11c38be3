import json
import os
from datetime import date, datetime
from decimal import Decimal

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from slotrent.db.base import Base
from slotrent.models import (
    Listing,
    PayoutAccount,
    Reservation,
    ReservationStatus,
    PaymentStatus,
    User,
    UserRole,
)
from slotrent.services.commission import split
from slotrent.services.gateway import (
    GatewayAccountStatus,
    GatewayBalance,
    GatewayEvent,
    GatewayPayout,
    GatewayRefund,
    PaymentGateway,
)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Monday 2 March 2026, 08:00 local
NOW = datetime(2026, 3, 2, 8, 0)
TODAY = NOW.date()


class FakeGateway(PaymentGateway):
    """In-memory gateway. Queue exceptions in ``payout_errors`` to fail the next payout calls."""

    def __init__(self):
        self.accounts = {}
        self.payout_calls = []
        self.payout_errors = []
        self.payout_status = "paid"
        self.refunds = []
        self.refund_errors = []
        self._by_key = {}

    def create_account(self, owner_email):
        account_id = f"acct_{len(self.accounts) + 1}"
        self.accounts[account_id] = GatewayAccountStatus(account_id=account_id, requirements=["external_account"])
        return account_id

    def get_account_status(self, account_id):
        return self.accounts[account_id]

    def make_capable(self, account_id):
        self.accounts[account_id] = GatewayAccountStatus(
            account_id=account_id,
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )

    def create_payout(self, account_id, amount, currency, metadata, idempotency_key, transfer_id=None):
        self.payout_calls.append(
            {
                "account_id": account_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "transfer_id": transfer_id,
            }
        )
        if self.payout_errors:
            raise self.payout_errors.pop(0)
        if idempotency_key not in self._by_key:
            n = len(self._by_key) + 1
            self._by_key[idempotency_key] = GatewayPayout(
                payout_id=f"po_{n}",
                transfer_id=transfer_id or f"tr_{n}",
                status=self.payout_status,
            )
        return self._by_key[idempotency_key]

    def retrieve_balance(self, account_id):
        return GatewayBalance(available=Decimal("80.00"), pending=Decimal("0.00"), currency="gbp")

    def create_refund(self, payment_reference, amount, idempotency_key):
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append({"payment_reference": payment_reference, "amount": amount, "key": idempotency_key})
        return GatewayRefund(refund_id=f"re_{len(self.refunds)}", status="succeeded")

    def parse_event(self, payload, signature):
        body = json.loads(payload)
        return GatewayEvent(type=body["type"], data=body["data"]["object"])


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


def _user(db, role, email):
    user = User(email=email, full_name=email.split("@")[0].title(), role=role.value)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def owner(db):
    return _user(db, UserRole.OWNER, "owner@example.com")


@pytest.fixture
def consumer(db):
    return _user(db, UserRole.CONSUMER, "consumer@example.com")


@pytest.fixture
def other_consumer(db):
    return _user(db, UserRole.CONSUMER, "other@example.com")


@pytest.fixture
def admin(db):
    return _user(db, UserRole.ADMIN, "admin@example.com")


@pytest.fixture
def listing(db, owner):
    """Open 09:00-17:00, 60-minute slots, 50.00 per slot."""
    listing = Listing(
        owner_id=owner.id,
        name="Court 1",
        opening_minute=9 * 60,
        closing_minute=17 * 60,
        slot_minutes=60,
        price_per_slot=Decimal("50.00"),
        currency="gbp",
        is_active=True,
        is_approved=True,
    )
    db.add(listing)
    db.commit()
    db.refresh(listing)
    return listing


@pytest.fixture
def capable_account(db, owner, gateway):
    account_id = gateway.create_account(owner.email)
    gateway.make_capable(account_id)
    account = PayoutAccount(
        owner_id=owner.id,
        gateway_account_id=account_id,
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def make_reservation(db, listing, consumer):
    """Insert a reservation row directly, bypassing the booking rules."""
    counter = {"n": 0}

    def _make(
        day: date = TODAY,
        start: int = 10 * 60,
        end: int = 11 * 60,
        status: ReservationStatus = ReservationStatus.CONFIRMED,
        payment_status: PaymentStatus = PaymentStatus.PAID,
        gross: Decimal = Decimal("100.00"),
        rate: int = 20,
        **fields,
    ) -> Reservation:
        counter["n"] += 1
        breakdown = split(gross, rate)
        reservation = Reservation(
            reservation_number=f"RSV-T{counter['n']:05d}",
            listing_id=fields.pop("listing_id", listing.id),
            consumer_id=fields.pop("consumer_id", consumer.id),
            date=day,
            start_minute=start,
            end_minute=end,
            gross_amount=breakdown.gross_amount,
            owner_amount=breakdown.owner_amount,
            platform_amount=breakdown.platform_amount,
            commission_rate=rate,
            currency="gbp",
            status=status.value,
            payment_status=payment_status.value,
            payment_reference="pi_test" if payment_status == PaymentStatus.PAID else None,
            **fields,
        )
        db.add(reservation)
        db.commit()
        db.refresh(reservation)
        return reservation

    return _make
