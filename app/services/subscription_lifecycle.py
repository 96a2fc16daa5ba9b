"""
Plan tier transitions (free <-> paid).

This module is the only writer of users.plan_tier and users.paypal_subscription_id.
Both transitions are idempotent and touch nothing but the plan columns, so
profile data, preferences and conversation history survive any number of
upgrades and downgrades.
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import validation_error
from app.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from app.models.user import PlanTier, User
from app.services import plan_store
from app.services.usage_accountant import utc_today

logger = logging.getLogger(__name__)


def upgrade(
    db: Session,
    account_id: int,
    external_subscription_id: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> User:
    """
    Move a user to the paid plan and attach the PayPal subscription.
    Usage counters are kept as they are.
    """
    plan_store.validate_account_id(account_id)
    if not isinstance(external_subscription_id, str) or not external_subscription_id.strip():
        raise validation_error("subscription_id", external_subscription_id)
    subscription_id = external_subscription_id.strip()

    def apply() -> User:
        user = plan_store.get_account(db, account_id)
        if user.plan_tier == PlanTier.PAID and user.paypal_subscription_id == subscription_id:
            logger.info("[Lifecycle] User %s already paid with subscription %s, nothing to do", account_id, subscription_id)
            return user

        previous_id = user.paypal_subscription_id
        if previous_id and previous_id != subscription_id:
            logger.warning(
                "[Lifecycle] User %s subscription %s replaced by %s; webhooks for the old subscription will no longer match",
                account_id, previous_id, subscription_id,
            )
        user.plan_tier = PlanTier.PAID
        user.paypal_subscription_id = subscription_id
        db.commit()
        db.refresh(user)
        logger.info("[Lifecycle] User %s upgraded to paid plan with PayPal subscription %s", account_id, subscription_id)
        return user

    return plan_store.run_db_operation(db, "upgrade", apply, policy)


def downgrade(
    db: Session,
    account_id: int,
    today: Optional[date] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> User:
    """
    Move a user to the free plan with a fresh daily allowance.
    Always writes, so repeating it (or running it on a free user) is safe.
    """
    plan_store.validate_account_id(account_id)
    today = today or utc_today()

    def apply() -> User:
        user = plan_store.get_account(db, account_id)
        previous_subscription = user.paypal_subscription_id

        user.plan_tier = PlanTier.FREE
        user.paypal_subscription_id = None
        user.daily_usage_count = 0
        user.last_usage_date = today
        db.commit()
        db.refresh(user)
        logger.info(
            "[Lifecycle] User %s downgraded to free plan (previous subscription: %s)",
            account_id, previous_subscription,
        )
        return user

    return plan_store.run_db_operation(db, "downgrade", apply, policy)
