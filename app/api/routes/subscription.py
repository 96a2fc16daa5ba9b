"""
PayPal subscription management for the signed-in user.
Upgrade is two steps: create returns a PayPal approval link, and confirm
(or the BILLING.SUBSCRIPTION.CREATED webhook) flips the plan once PayPal
reports the subscription active.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.dependencies.auth import get_billing_gateway, get_current_user_id
from app.schemas.subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ConfirmSubscriptionRequest,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    PlanChangeResponse,
    SubscriptionDetailsResponse,
    SubscriptionStatusResponse,
)
from app.services import subscription_service
from app.services.paypal_gateway import PayPalGateway

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    gateway: PayPalGateway = Depends(get_billing_gateway),
):
    overview = await subscription_service.get_subscription_overview(db, gateway, user_id)
    subscription = None
    if overview.details:
        subscription = SubscriptionDetailsResponse(
            id=overview.details.id,
            status=overview.details.status.value,
            plan_id=overview.details.plan_id,
        )
    return SubscriptionStatusResponse(
        plan_tier=overview.usage.tier.value,
        remaining=overview.usage.remaining,
        unlimited=overview.usage.unlimited,
        paypal_subscription_id=overview.subscription_id,
        subscription=subscription,
    )


@router.post("/create", response_model=CreateSubscriptionResponse)
async def create_subscription(
    payload: Optional[CreateSubscriptionRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    gateway: PayPalGateway = Depends(get_billing_gateway),
):
    """
    Create a PayPal subscription and return the approval URL to redirect the user to.
    """
    created = await subscription_service.request_upgrade(db, gateway, user_id, payload.plan_id if payload else None)
    return CreateSubscriptionResponse(
        subscription_id=created.id,
        approval_url=created.approval_url,
        status=created.status.value,
    )


@router.post("/confirm", response_model=PlanChangeResponse)
async def confirm_subscription(
    payload: ConfirmSubscriptionRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    gateway: PayPalGateway = Depends(get_billing_gateway),
):
    """Called by the frontend after PayPal redirects back from approval."""
    user = await subscription_service.confirm_upgrade(db, gateway, user_id, payload.subscription_id)
    return PlanChangeResponse(
        success=True,
        plan_tier=user.plan_tier.value,
        paypal_subscription_id=user.paypal_subscription_id,
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    payload: Optional[CancelSubscriptionRequest] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
    gateway: PayPalGateway = Depends(get_billing_gateway),
):
    """
    Ask PayPal to cancel. The plan stays paid until PayPal's cancellation webhook arrives.
    """
    subscription_id = await subscription_service.request_cancellation(db, gateway, user_id, payload.reason if payload else None)
    return CancelSubscriptionResponse(
        success=True,
        subscription_id=subscription_id,
        message="Cancellation requested. Your plan will change once PayPal confirms it.",
    )
