"""
Daily conversation allowance.
The chat frontend asks can-start before opening a new conversation and calls
increment once the conversation is actually created.
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.schemas.usage import CanStartResponse, UsageIncrementResponse, UsageStatusResponse
from app.services import usage_accountant

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/remaining", response_model=UsageStatusResponse)
def get_remaining_usage(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    usage = usage_accountant.get_usage_status(db, user_id)
    return UsageStatusResponse(
        plan_tier=usage.tier.value,
        remaining=usage.remaining,
        limit=usage.limit,
        unlimited=usage.unlimited,
    )


@router.get("/can-start", response_model=CanStartResponse)
def can_start_conversation(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    allowed = usage_accountant.can_start_usage_unit(db, user_id)
    usage = usage_accountant.get_usage_status(db, user_id)
    return CanStartResponse(
        allowed=allowed,
        remaining=usage.remaining,
        plan_tier=usage.tier.value,
    )


@router.post("/increment", response_model=UsageIncrementResponse)
def increment_usage(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Count one new conversation.
    Returns 429 with upgrade_required when the free allowance is used up.
    """
    user = usage_accountant.admit_usage_unit(db, user_id)
    remaining = usage_accountant.get_remaining(user, usage_accountant.utc_today())
    return UsageIncrementResponse(
        success=True,
        remaining=remaining,
        daily_usage_count=user.daily_usage_count,
    )
