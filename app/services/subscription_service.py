"""
User-initiated subscription flows: start an upgrade, confirm it after PayPal
approval, request cancellation, and report the current plan.

No database transaction is held open while PayPal is being called; each flow
reads what it needs, commits, talks to PayPal, then hands any plan change to
subscription_lifecycle.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import (
    BillingError,
    billing_configuration_error,
    subscription_already_exists,
    subscription_not_active,
    subscription_not_found,
    subscription_not_owned,
    validation_error,
)
from app.models.user import PlanTier, User
from app.services import plan_store, subscription_lifecycle, usage_accountant
from app.services.paypal_gateway import CreatedSubscription, PayPalGateway, SubscriptionDetails

logger = logging.getLogger(__name__)

PAYPAL_PLAN_ID = os.getenv("PAYPAL_PLAN_ID", "").strip()
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


@dataclass(frozen=True)
class SubscriptionOverview:
    usage: usage_accountant.UsageStatus
    subscription_id: Optional[str] = None
    details: Optional[SubscriptionDetails] = None


def _load_account(db: Session, account_id: int) -> User:
    return plan_store.run_db_operation(db, "load_account", lambda: plan_store.get_account(db, account_id))


async def request_upgrade(
    db: Session,
    gateway: PayPalGateway,
    account_id: int,
    plan_id: Optional[str] = None,
) -> CreatedSubscription:
    """
    Create a PayPal subscription for the user and return its approval link.
    The plan does not change until the subscription is confirmed or the
    BILLING.SUBSCRIPTION.CREATED webhook arrives.
    """
    if plan_id is not None and (not isinstance(plan_id, str) or not plan_id.strip()):
        raise validation_error("plan_id", plan_id)
    effective_plan_id = (plan_id or PAYPAL_PLAN_ID).strip()
    if not effective_plan_id:
        raise billing_configuration_error("PAYPAL_PLAN_ID is not set")

    user = _load_account(db, account_id)
    if user.plan_tier == PlanTier.PAID:
        raise subscription_already_exists(account_id)
    db.commit()

    created = await gateway.create_subscription(
        effective_plan_id,
        custom_id=str(account_id),
        return_url=f"{FRONTEND_URL}/account?planChanged=true&status=upgraded",
        cancel_url=f"{FRONTEND_URL}/account?status=cancelled",
    )
    logger.info("[PayPal] User %s started upgrade with subscription %s", account_id, created.id)
    return created


async def confirm_upgrade(
    db: Session,
    gateway: PayPalGateway,
    account_id: int,
    subscription_id: str,
) -> User:
    """Re-check the subscription with PayPal and upgrade the user if it is active."""
    if not isinstance(subscription_id, str) or not subscription_id.strip():
        raise validation_error("subscription_id", subscription_id)
    subscription_id = subscription_id.strip()

    _load_account(db, account_id)
    db.commit()

    details = await gateway.get_subscription_details(subscription_id)
    if details.custom_id and details.custom_id != str(account_id):
        logger.warning(
            "[PayPal] User %s tried to confirm subscription %s owned by user %s",
            account_id, subscription_id, details.custom_id,
        )
        raise subscription_not_owned(account_id, subscription_id)
    if not details.is_active:
        raise subscription_not_active(subscription_id, details.status.value)

    return subscription_lifecycle.upgrade(db, account_id, subscription_id)


async def request_cancellation(
    db: Session,
    gateway: PayPalGateway,
    account_id: int,
    reason: Optional[str] = None,
) -> str:
    """
    Ask PayPal to cancel the user's subscription. The user stays on the paid
    plan until the cancellation webhook downgrades them.
    """
    user = _load_account(db, account_id)
    subscription_id = user.paypal_subscription_id
    db.commit()
    if not subscription_id:
        raise subscription_not_found(account_id)

    await gateway.cancel_subscription(subscription_id, reason or "User requested cancellation")
    return subscription_id


async def get_subscription_overview(
    db: Session,
    gateway: PayPalGateway,
    account_id: int,
) -> SubscriptionOverview:
    usage = usage_accountant.get_usage_status(db, account_id)
    user = _load_account(db, account_id)
    subscription_id = user.paypal_subscription_id
    db.commit()

    details = None
    if subscription_id:
        # PayPal being down must not hide the user's plan
        try:
            details = await gateway.get_subscription_details(subscription_id)
        except BillingError as e:
            logger.warning("[PayPal] Could not load details for subscription %s: %s", subscription_id, e)

    return SubscriptionOverview(usage=usage, subscription_id=subscription_id, details=details)
