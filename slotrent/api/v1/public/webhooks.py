import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.services.gateway import GatewayAccountStatus, PaymentGateway, get_gateway
from slotrent.services.payout_accounts import sync_account_by_gateway_id
from slotrent.services.settlement import apply_payout_update
from slotrent.schemas.common import ApiResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

PAYOUT_EVENTS = {"payout.paid", "payout.failed", "payout.canceled", "payout.updated"}


async def raw_body(request: Request) -> bytes:
    """Unparsed request body; signature verification needs the exact bytes."""
    return await request.body()


@router.post("/gateway", response_model=ApiResponse[dict])
def gateway_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Payout status changes and connected-account capability updates."""
    event = gateway.parse_event(payload, stripe_signature)
    obj = event.data

    if event.type in PAYOUT_EVENTS:
        arrival = obj.get("arrival_date")
        apply_payout_update(
            db,
            obj.get("id"),
            obj.get("status"),
            failure_code=obj.get("failure_code"),
            failure_message=obj.get("failure_message"),
            arrival_date=datetime.fromtimestamp(arrival, tz=timezone.utc) if arrival else None,
        )
    elif event.type == "account.updated":
        requirements = (obj.get("requirements") or {}).get("currently_due") or []
        sync_account_by_gateway_id(
            db,
            obj.get("id"),
            GatewayAccountStatus(
                account_id=obj.get("id"),
                charges_enabled=bool(obj.get("charges_enabled")),
                payouts_enabled=bool(obj.get("payouts_enabled")),
                details_submitted=bool(obj.get("details_submitted")),
                requirements=list(requirements),
            ),
        )
    else:
        logger.debug("Ignoring gateway event %s", event.type)

    return ApiResponse(data={"received": True, "type": event.type})
