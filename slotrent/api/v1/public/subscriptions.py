from uuid import UUID
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_user
from slotrent.models.user import User
from slotrent.services import subscriptions as subscription_service
from slotrent.services.gateway import PaymentGateway, get_gateway
from slotrent.schemas.common import ApiResponse
from slotrent.schemas.subscription import Subscription as SubscriptionSchema, SubscriptionCancel, SubscriptionCreate

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.post("/", response_model=ApiResponse[SubscriptionSchema], status_code=status.HTTP_201_CREATED)
def create_subscription(
    data: SubscriptionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Start a recurring booking (everyday, weekly or monthly).

    The anchor weekday / day-of-month is taken from `start_date`; monthly
    bookings anchored past the end of a shorter month fall on its last day.
    """
    subscription = subscription_service.create_subscription(db, current_user, data)
    return ApiResponse(data=SubscriptionSchema.model_validate(subscription), message="Recurring booking created")


@router.get("/", response_model=ApiResponse[List[SubscriptionSchema]])
def list_subscriptions(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    items = subscription_service.list_subscriptions(db, current_user)
    return ApiResponse(data=[SubscriptionSchema.model_validate(s) for s in items])


@router.post("/{subscription_id}/cancel", response_model=ApiResponse[SubscriptionSchema])
def cancel_subscription(
    subscription_id: UUID,
    data: Optional[SubscriptionCancel] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(get_current_user),
):
    subscription = subscription_service.get_subscription(db, subscription_id, current_user)
    subscription = subscription_service.cancel_subscription(
        db, gateway, current_user, subscription, immediately=bool(data and data.immediately)
    )
    return ApiResponse(data=SubscriptionSchema.model_validate(subscription))
