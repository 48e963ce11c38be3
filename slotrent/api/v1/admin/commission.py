from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from slotrent.db.session import get_db
from slotrent.api.deps import get_current_admin_user
from slotrent.core.exceptions import NotFoundError
from slotrent.models.user import User
from slotrent.services import commission as commission_service
from slotrent.services.platform_settings import get_rules, update_rules
from slotrent.schemas.common import ApiResponse
from slotrent.schemas.commission import (
    CommissionOverride as CommissionOverrideSchema,
    CommissionRateUpdate,
    EffectiveCommission,
    PlatformRules,
    PlatformRulesUpdate,
)

router = APIRouter(prefix="/admin/commission", tags=["Admin - Commission"])


def _rules_out(rules) -> PlatformRules:
    return PlatformRules(
        default_commission_rate=rules.default_commission_rate,
        cancellation_window_hours=rules.cancellation_window_hours,
        max_advance_booking_days=rules.max_advance_booking_days,
    )


def _require_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("Owner not found")
    return user


# ---------------------------------------------------------------------------
# Platform values
# ---------------------------------------------------------------------------


@router.get("/", response_model=ApiResponse[PlatformRules])
def get_platform_rules(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    return ApiResponse(data=_rules_out(get_rules(db)))


@router.put("/default", response_model=ApiResponse[PlatformRules])
def set_default_rate(
    data: CommissionRateUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    """New reservations use the new default; stored amounts of existing ones are untouched."""
    commission_service.set_default_rate(db, data.rate)
    return ApiResponse(data=_rules_out(get_rules(db)), message=f"Default commission set to {data.rate}%")


@router.put("/settings", response_model=ApiResponse[PlatformRules])
def update_platform_rules(
    data: PlatformRulesUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    rules = update_rules(db, **data.model_dump(exclude_unset=True))
    return ApiResponse(data=_rules_out(rules))


# ---------------------------------------------------------------------------
# Per-owner overrides
# ---------------------------------------------------------------------------


@router.get("/owners/{owner_id}", response_model=ApiResponse[EffectiveCommission])
def get_owner_rate(
    owner_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    _require_user(db, owner_id)
    rate, is_override, default_rate = commission_service.resolve_rate(db, owner_id)
    return ApiResponse(
        data=EffectiveCommission(owner_id=owner_id, rate=rate, is_override=is_override, default_rate=default_rate)
    )


@router.put("/owners/{owner_id}", response_model=ApiResponse[CommissionOverrideSchema])
def set_owner_rate(
    owner_id: UUID,
    data: CommissionRateUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    _require_user(db, owner_id)
    override = commission_service.set_override(db, owner_id, data.rate, current_user.id)
    return ApiResponse(data=CommissionOverrideSchema.model_validate(override))


@router.delete("/owners/{owner_id}", response_model=ApiResponse[dict])
def clear_owner_rate(
    owner_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin_user),
):
    removed = commission_service.clear_override(db, owner_id)
    if not removed:
        raise NotFoundError("No commission override for this owner")
    return ApiResponse(data={"owner_id": str(owner_id), "removed": True})
