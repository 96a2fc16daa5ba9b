from pydantic import BaseModel
from typing import Optional


class CreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None  # Falls back to PAYPAL_PLAN_ID


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str
    approval_url: str
    status: str


class ConfirmSubscriptionRequest(BaseModel):
    subscription_id: str


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool
    subscription_id: str
    message: str


class SubscriptionDetailsResponse(BaseModel):
    id: str
    status: str
    plan_id: Optional[str] = None


class SubscriptionStatusResponse(BaseModel):
    plan_tier: str
    remaining: int
    unlimited: bool
    paypal_subscription_id: Optional[str] = None
    subscription: Optional[SubscriptionDetailsResponse] = None


class PlanChangeResponse(BaseModel):
    success: bool
    plan_tier: str
    paypal_subscription_id: Optional[str] = None
