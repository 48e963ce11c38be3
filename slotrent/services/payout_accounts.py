import logging
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slotrent.core.exceptions import AuthorizationError, NotFoundError
from slotrent.models.listing import Listing
from slotrent.models.payout import Payout, PayoutAccount
from slotrent.models.reservation import PayoutStatus, Reservation
from slotrent.models.user import User, UserRole
from slotrent.services import events
from slotrent.services.gateway import GatewayAccountStatus, GatewayBalance, PaymentGateway

logger = logging.getLogger(__name__)


def get_account(db: Session, owner_id: UUID) -> Optional[PayoutAccount]:
    return db.query(PayoutAccount).filter(PayoutAccount.owner_id == owner_id).first()


def require_account(db: Session, owner_id: UUID) -> PayoutAccount:
    account = get_account(db, owner_id)
    if account is None:
        raise NotFoundError("No payout account registered")
    return account


def create_payout_account(db: Session, gateway: PaymentGateway, owner: User) -> PayoutAccount:
    """Register the owner at the gateway. Idempotent per owner."""
    if owner.role != UserRole.OWNER.value:
        raise AuthorizationError("Only listing owners can register a payout account")
    existing = get_account(db, owner.id)
    if existing is not None:
        return existing

    account_id = gateway.create_account(owner.email)
    status = gateway.get_account_status(account_id)
    account = PayoutAccount(owner_id=owner.id, gateway_account_id=account_id)
    _copy_status(account, status)
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Concurrent payout account registration for owner %s", owner.id)
        return require_account(db, owner.id)
    db.refresh(account)
    logger.info("Payout account %s registered for owner %s", account_id, owner.id)
    return account


def _copy_status(account: PayoutAccount, status: GatewayAccountStatus) -> None:
    account.charges_enabled = status.charges_enabled
    account.payouts_enabled = status.payouts_enabled
    account.details_submitted = status.details_submitted
    account.requirements = list(status.requirements)


def apply_account_status(db: Session, account: PayoutAccount, status: GatewayAccountStatus) -> Tuple[bool, int]:
    """
    Store the reported capabilities. On a not-capable -> capable transition the
    owner's held payouts are released before returning.

    Returns (became_capable, released_count).
    """
    was_capable = account.is_payout_capable
    _copy_status(account, status)
    db.commit()

    became_capable = not was_capable and account.is_payout_capable
    released = 0
    if became_capable:
        logger.info("Payout account %s became payout-capable", account.gateway_account_id)
        released = release_held_payouts(db, account.owner_id)
    return became_capable, released


def refresh_account_status(db: Session, gateway: PaymentGateway, owner: User) -> Tuple[PayoutAccount, bool, int]:
    account = require_account(db, owner.id)
    status = gateway.get_account_status(account.gateway_account_id)
    became_capable, released = apply_account_status(db, account, status)
    db.refresh(account)
    return account, became_capable, released


def sync_account_by_gateway_id(db: Session, gateway_account_id: str, status: GatewayAccountStatus) -> bool:
    """Webhook path: returns False when the account is unknown."""
    account = (
        db.query(PayoutAccount)
        .filter(PayoutAccount.gateway_account_id == gateway_account_id)
        .first()
    )
    if account is None:
        logger.warning("Capability update for unknown gateway account %s", gateway_account_id)
        return False
    apply_account_status(db, account, status)
    return True


# ---------------------------------------------------------------------------
# Held payouts
# ---------------------------------------------------------------------------


def release_held_payouts(db: Session, owner_id: UUID) -> int:
    """HELD -> PENDING for the owner's reservations. Committed before returning."""
    owned_listings = select(Listing.id).where(Listing.owner_id == owner_id)
    released = (
        db.query(Reservation)
        .filter(
            Reservation.payout_status == PayoutStatus.HELD.value,
            Reservation.listing_id.in_(owned_listings),
        )
        .update(
            {Reservation.payout_status: PayoutStatus.PENDING.value, Reservation.payout_held_reason: None},
            synchronize_session="fetch",
        )
    )
    if released:
        events.publish(db, "payout.released", {"count": released}, recipient_id=owner_id)
    db.commit()
    if released:
        logger.info("Released %d held payout(s) for owner %s", released, owner_id)
    return released


def release_held_for_capable_accounts(db: Session) -> int:
    """Start-of-cycle pass: release holds for every owner whose account is capable now."""
    held_owner_ids = {
        owner_id
        for (owner_id,) in (
            db.query(Listing.owner_id)
            .join(Reservation, Reservation.listing_id == Listing.id)
            .filter(Reservation.payout_status == PayoutStatus.HELD.value)
            .distinct()
        )
    }
    if not held_owner_ids:
        return 0

    capable = (
        db.query(PayoutAccount)
        .filter(
            PayoutAccount.owner_id.in_(held_owner_ids),
            PayoutAccount.charges_enabled == True,
            PayoutAccount.payouts_enabled == True,
        )
        .all()
    )
    total = 0
    for account in capable:
        try:
            total += release_held_payouts(db, account.owner_id)
        except Exception:
            db.rollback()
            logger.exception("Releasing held payouts for owner %s failed", account.owner_id)
    return total


# ---------------------------------------------------------------------------
# Balance / history
# ---------------------------------------------------------------------------


def get_balance(gateway: PaymentGateway, account: PayoutAccount) -> GatewayBalance:
    return gateway.retrieve_balance(account.gateway_account_id)


def list_payouts(
    db: Session,
    owner_id: Optional[UUID] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Payout], int]:
    query = db.query(Payout)
    if owner_id is not None:
        query = query.join(PayoutAccount, Payout.payout_account_id == PayoutAccount.id).filter(
            PayoutAccount.owner_id == owner_id
        )
    if status:
        query = query.filter(Payout.status == status.lower())
    total = query.count()
    items = query.order_by(Payout.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return items, total
