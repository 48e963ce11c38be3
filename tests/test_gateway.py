from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from slotrent.core.exceptions import GatewayPermanentError, GatewayTransientError
from slotrent.models import Payout, PayoutStatus, ReservationStatus
from slotrent.services import settlement
from slotrent.services.gateway import StripeGateway, from_minor_units, to_minor_units
from conftest import TODAY


class StripeStub:
    """Records Transfer/Payout/Refund calls; queue exceptions to fail the next call."""

    def __init__(self):
        self.transfers = []
        self.payouts = []
        self.refunds = []
        self.transfer_errors = []
        self.payout_errors = []
        self.refund_errors = []

    def transfer(self, **params):
        if self.transfer_errors:
            raise self.transfer_errors.pop(0)
        self.transfers.append(params)
        return SimpleNamespace(id=f"tr_{len(self.transfers)}")

    def payout(self, **params):
        self.payouts.append(params)
        if self.payout_errors:
            raise self.payout_errors.pop(0)
        return SimpleNamespace(
            id=f"po_{len(self.payouts)}",
            status="in_transit",
            arrival_date=None,
            failure_code=None,
            failure_message=None,
        )

    def refund(self, **params):
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append(params)
        return SimpleNamespace(id="re_1", status="succeeded")


@pytest.fixture
def stripe_stub(monkeypatch):
    stub = StripeStub()
    monkeypatch.setattr(stripe.Transfer, "create", lambda **params: stub.transfer(**params))
    monkeypatch.setattr(stripe.Payout, "create", lambda **params: stub.payout(**params))
    monkeypatch.setattr(stripe.Refund, "create", lambda **params: stub.refund(**params))
    return stub


@pytest.fixture
def stripe_gateway():
    return StripeGateway(api_key="sk_test_123", webhook_secret="whsec_test")


def _declined():
    return stripe.InvalidRequestError("No bank account on file", "destination", code="no_external_account")


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("28.33")) == 2833
    assert from_minor_units(2833) == Decimal("28.33")


def test_payout_transfers_then_pays_out(stripe_stub, stripe_gateway):
    result = stripe_gateway.create_payout("acct_1", Decimal("80.00"), "gbp", {"reservation_id": "r1"}, "payout-r1")

    assert result.transfer_id == "tr_1"
    assert result.payout_id == "po_1"
    assert result.status == "processing"
    assert stripe_stub.transfers[0]["amount"] == 8000
    assert stripe_stub.transfers[0]["destination"] == "acct_1"
    assert stripe_stub.transfers[0]["idempotency_key"] == "payout-r1-transfer"
    assert stripe_stub.payouts[0]["stripe_account"] == "acct_1"
    assert stripe_stub.payouts[0]["idempotency_key"] == "payout-r1"


def test_payout_rejected_after_transfer_keeps_transfer_id(stripe_stub, stripe_gateway):
    stripe_stub.payout_errors.append(_declined())

    with pytest.raises(GatewayPermanentError) as excinfo:
        stripe_gateway.create_payout("acct_1", Decimal("80.00"), "gbp", {}, "payout-r1")
    assert excinfo.value.failure_code == "no_external_account"
    assert excinfo.value.transfer_id == "tr_1"


def test_known_transfer_only_issues_the_payout(stripe_stub, stripe_gateway):
    result = stripe_gateway.create_payout("acct_1", Decimal("80.00"), "gbp", {}, "payout-p1-retry-1", transfer_id="tr_9")

    assert stripe_stub.transfers == []
    assert len(stripe_stub.payouts) == 1
    assert result.transfer_id == "tr_9"


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("Connection reset"),
        stripe.RateLimitError("Too many requests"),
        stripe.APIError("Internal error"),
    ],
)
def test_network_and_server_errors_are_transient(stripe_stub, stripe_gateway, error):
    stripe_stub.transfer_errors.append(error)

    with pytest.raises(GatewayTransientError) as excinfo:
        stripe_gateway.create_payout("acct_1", Decimal("80.00"), "gbp", {}, "payout-r1")
    assert excinfo.value.transfer_id is None
    assert stripe_stub.payouts == []


@pytest.mark.parametrize(
    "error, failure_code",
    [
        (stripe.InvalidRequestError("Insufficient funds", "amount", code="balance_insufficient"), "balance_insufficient"),
        (stripe.PermissionError("Account restricted"), "PermissionError"),
        (stripe.AuthenticationError("Invalid API key"), "AuthenticationError"),
    ],
)
def test_rejections_are_permanent(stripe_stub, stripe_gateway, error, failure_code):
    stripe_stub.transfer_errors.append(error)

    with pytest.raises(GatewayPermanentError) as excinfo:
        stripe_gateway.create_payout("acct_1", Decimal("80.00"), "gbp", {}, "payout-r1")
    assert excinfo.value.failure_code == failure_code
    assert excinfo.value.transfer_id is None


def test_refund_errors_are_translated(stripe_stub, stripe_gateway):
    stripe_stub.refund_errors.append(stripe.RateLimitError("Too many requests"))
    with pytest.raises(GatewayTransientError):
        stripe_gateway.create_refund("pi_1", Decimal("50.00"), "refund-r1")

    refund = stripe_gateway.create_refund("pi_1", Decimal("50.00"), "refund-r1")
    assert refund.refund_id == "re_1"
    assert stripe_stub.refunds[0]["amount"] == 5000
    assert stripe_stub.refunds[0]["payment_intent"] == "pi_1"


def test_failed_payout_retry_moves_funds_once(db, stripe_stub, stripe_gateway, capable_account, admin, make_reservation):
    stripe_stub.payout_errors.extend([_declined(), _declined()])
    reservation = make_reservation(
        day=TODAY - timedelta(days=1),
        status=ReservationStatus.COMPLETED,
        payout_status=PayoutStatus.PENDING.value,
    )

    assert settlement.settle_reservation(db, stripe_gateway, reservation.id) == settlement.OUTCOME_FAILED
    payout = db.query(Payout).one()
    assert payout.gateway_transfer_id == "tr_1"

    assert settlement.retry_failed_payouts(db, stripe_gateway)["failed"] == 1
    assert len(stripe_stub.transfers) == 1
    assert len(stripe_stub.payouts) == 2
    assert stripe_stub.payouts[-1]["idempotency_key"] == f"payout-{payout.id}-retry-1"
