"""
Toolkit allowance for the signed-in user's plan.
The chat frontend caps how many tool integrations can be enabled at once.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.core.plan_limits import get_plan_limit
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.models.user import PlanTier
from app.schemas.usage import ToolkitLimitsResponse
from app.services import usage_accountant

router = APIRouter()


@router.get("/limits", response_model=ToolkitLimitsResponse)
def get_toolkit_limits(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    tier = usage_accountant.get_usage_status(db, user_id).tier
    return ToolkitLimitsResponse(
        plan=tier.value,
        max_toolkits=get_plan_limit(tier.value, "max_toolkits"),
        is_premium=tier == PlanTier.PAID,
    )
