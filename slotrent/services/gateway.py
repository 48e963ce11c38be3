"""
Payment gateway collaborator.

``PaymentGateway`` is what the rest of the service talks to. ``StripeGateway``
implements it on Stripe Connect: owner accounts are Express accounts, the
owner's share is moved with a Transfer and paid out from the connected
account's balance.

Stripe exceptions never leave this module: network, rate-limit and 5xx
errors become ``GatewayTransientError``; declines, invalid requests and
permission problems become ``GatewayPermanentError``. When the Transfer
succeeded but the Payout did not, the error carries ``transfer_id`` so the
caller can store it and later issue only the Payout.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from slotrent.core.config import settings
from slotrent.core.exceptions import GatewayPermanentError, GatewayTransientError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class GatewayAccountStatus:
    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: List[str] = field(default_factory=list)

    @property
    def is_payout_capable(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


@dataclass
class GatewayPayout:
    payout_id: Optional[str]
    status: str  # pending, processing, paid, failed
    transfer_id: Optional[str] = None
    arrival_date: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass
class GatewayBalance:
    available: Decimal
    pending: Decimal
    currency: str


@dataclass
class GatewayRefund:
    refund_id: str
    status: str


@dataclass
class GatewayEvent:
    type: str
    data: Dict[str, Any]


class PaymentGateway(ABC):
    """Fallible remote calls; every method may raise a GatewayError subclass."""

    @abstractmethod
    def create_account(self, owner_email: str) -> str:
        ...

    @abstractmethod
    def get_account_status(self, account_id: str) -> GatewayAccountStatus:
        ...

    @abstractmethod
    def create_payout(
        self,
        account_id: str,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        transfer_id: Optional[str] = None,
    ) -> GatewayPayout:
        """
        Move ``amount`` to the owner and pay it out. Pass ``transfer_id`` when an
        earlier attempt already moved the funds; only the payout is issued then.
        """

    @abstractmethod
    def retrieve_balance(self, account_id: str) -> GatewayBalance:
        ...

    @abstractmethod
    def create_refund(self, payment_reference: str, amount: Decimal, idempotency_key: str) -> GatewayRefund:
        ...

    @abstractmethod
    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        ...


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

# Stripe payout.status -> our payout record status
PAYOUT_STATUS_MAP = {
    "paid": "paid",
    "pending": "processing",
    "in_transit": "processing",
    "failed": "failed",
    "canceled": "failed",
}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def _translate(exc: stripe.StripeError, action: str):
    if isinstance(exc, _TRANSIENT_ERRORS):
        logger.warning("Transient gateway error during %s: %s", action, exc)
        return GatewayTransientError(f"Gateway unavailable during {action}", details={"error": str(exc)})
    code = getattr(exc, "code", None) or exc.__class__.__name__
    logger.error("Gateway rejected %s: %s (%s)", action, exc, code)
    return GatewayPermanentError(
        getattr(exc, "user_message", None) or str(exc) or f"Gateway rejected {action}",
        failure_code=code,
    )


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    def create_account(self, owner_email: str) -> str:
        try:
            account = stripe.Account.create(
                type="express",
                email=owner_email,
                capabilities={"transfers": {"requested": True}},
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "account creation") from exc
        logger.info("Created gateway account %s", account.id)
        return account.id

    def get_account_status(self, account_id: str) -> GatewayAccountStatus:
        try:
            account = stripe.Account.retrieve(account_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise _translate(exc, "account status") from exc

        requirements: List[str] = []
        req = getattr(account, "requirements", None)
        if req:
            for name in ("currently_due", "past_due", "pending_verification"):
                requirements.extend(item for item in (getattr(req, name, None) or []) if isinstance(item, str))

        return GatewayAccountStatus(
            account_id=account_id,
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            details_submitted=bool(getattr(account, "details_submitted", False)),
            requirements=requirements,
        )

    def create_payout(
        self,
        account_id: str,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        transfer_id: Optional[str] = None,
    ) -> GatewayPayout:
        cents = to_minor_units(amount)
        if transfer_id is None:
            try:
                transfer = stripe.Transfer.create(
                    amount=cents,
                    currency=currency,
                    destination=account_id,
                    metadata=metadata,
                    idempotency_key=f"{idempotency_key}-transfer",
                    api_key=self.api_key,
                )
            except stripe.StripeError as exc:
                raise _translate(exc, "transfer") from exc
            transfer_id = transfer.id
        else:
            logger.info("Reusing transfer %s for payout to %s", transfer_id, account_id)

        try:
            payout = stripe.Payout.create(
                amount=cents,
                currency=currency,
                metadata=metadata,
                stripe_account=account_id,
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            error = _translate(exc, "payout")
            # The transfer went through; a retry must not move the funds again
            error.transfer_id = transfer_id
            raise error from exc

        arrival = getattr(payout, "arrival_date", None)
        return GatewayPayout(
            payout_id=payout.id,
            transfer_id=transfer_id,
            status=PAYOUT_STATUS_MAP.get(payout.status, "processing"),
            arrival_date=datetime.fromtimestamp(arrival, tz=timezone.utc) if arrival else None,
            failure_code=getattr(payout, "failure_code", None),
            failure_message=getattr(payout, "failure_message", None),
        )

    def retrieve_balance(self, account_id: str) -> GatewayBalance:
        try:
            balance = stripe.Balance.retrieve(stripe_account=account_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise _translate(exc, "balance") from exc

        currency = settings.PLATFORM_CURRENCY
        available = sum(b.amount for b in balance.available if b.currency == currency)
        pending = sum(b.amount for b in balance.pending if b.currency == currency)
        return GatewayBalance(
            available=from_minor_units(available),
            pending=from_minor_units(pending),
            currency=currency,
        )

    def create_refund(self, payment_reference: str, amount: Decimal, idempotency_key: str) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_reference,
                amount=to_minor_units(amount),
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "refund") from exc
        return GatewayRefund(refund_id=refund.id, status=refund.status)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError("Invalid webhook payload or signature", code="invalid_signature") from exc
        return GatewayEvent(type=event["type"], data=dict(event["data"]["object"]))


def get_gateway() -> PaymentGateway:
    return StripeGateway()
