from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_user
from slotrent.core.exceptions import NotFoundError
from slotrent.models.user import User
from slotrent.models.notification import Notification
from slotrent.schemas.common import ApiResponse, PaginatedResponse
from slotrent.schemas.notification import Notification as NotificationSchema
from slotrent.schemas.user import User as UserSchema, UserUpdate

router = APIRouter(prefix="/me", tags=["Me"])


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/", response_model=ApiResponse[UserSchema])
def get_me(current_user: User = Depends(get_current_user)):
    return ApiResponse(data=UserSchema.model_validate(current_user))


@router.patch("/", response_model=ApiResponse[UserSchema])
def update_me(
    data: UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Update the authenticated user's contact details (full_name, phone)."""
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(current_user, field, value)
    db.commit()
    db.refresh(current_user)
    return ApiResponse(data=UserSchema.model_validate(current_user))


# ---------------------------------------------------------------------------
# Notifications (written by the outbound event dispatcher)
# ---------------------------------------------------------------------------


@router.get("/notifications", response_model=ApiResponse[PaginatedResponse[NotificationSchema]])
def list_notifications(
    unread_only: bool = Query(False, description="Return only unread notifications"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    query = db.query(Notification).filter(Notification.user_id == current_user.id)
    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712

    total = query.count()
    notifications = (
        query.order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return ApiResponse(
        data=PaginatedResponse.build(
            [NotificationSchema.model_validate(n) for n in notifications], total, page, limit
        )
    )


@router.patch("/notifications/read-all", response_model=ApiResponse[dict])
def mark_all_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    updated = db.query(Notification).filter(
        Notification.user_id == current_user.id,
        Notification.is_read == False,  # noqa: E712
    ).update({"is_read": True}, synchronize_session="fetch")
    db.commit()
    return ApiResponse(data={"marked_read": updated})


@router.patch("/notifications/{notif_id}/read", response_model=ApiResponse[NotificationSchema])
def mark_notification_read(
    notif_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    notif = db.query(Notification).filter(
        Notification.id == notif_id,
        Notification.user_id == current_user.id,
    ).first()
    if not notif:
        raise NotFoundError("Notification not found")
    notif.is_read = True
    db.commit()
    db.refresh(notif)
    return ApiResponse(data=NotificationSchema.model_validate(notif))
