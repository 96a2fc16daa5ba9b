from pydantic import BaseModel
from typing import Optional


class UsageStatusResponse(BaseModel):
    plan_tier: str
    remaining: int  # -1 means unlimited
    limit: int  # -1 means unlimited
    unlimited: bool


class CanStartResponse(BaseModel):
    allowed: bool
    remaining: int
    plan_tier: str


class UsageIncrementResponse(BaseModel):
    success: bool
    remaining: int
    daily_usage_count: Optional[int] = None


class ToolkitLimitsResponse(BaseModel):
    plan: str
    max_toolkits: int
    is_premium: bool
