"""
Service for daily conversation allowances.
Free users get FREE_DAILY_LIMIT new conversations per UTC day; paid users are unlimited.

The read path (get_remaining / can_admit) never writes. Counting a conversation
is a single atomic UPDATE in the plan store.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import usage_limit_exceeded
from app.core.plan_limits import UNLIMITED, get_plan_limit
from app.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from app.models.user import PlanTier, User
from app.services import plan_store

logger = logging.getLogger(__name__)


def utc_today() -> date:
    """Current calendar date in UTC; the daily boundary is UTC midnight."""
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class UsageStatus:
    tier: PlanTier
    remaining: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.remaining == UNLIMITED


def get_remaining(account: User, today: date) -> int:
    """
    Conversations left today.

    Returns UNLIMITED (-1) for paid users. For free users a missing or stale
    last_usage_date means nothing has been used today, so the full limit is
    available regardless of the stored count.
    """
    if account.plan_tier == PlanTier.PAID:
        return UNLIMITED

    limit = get_plan_limit(PlanTier.FREE.value, "max_conversations_per_day")
    if account.last_usage_date is None or account.last_usage_date != today:
        return limit

    return max(0, limit - (account.daily_usage_count or 0))


def can_admit(account: User, today: date) -> bool:
    if account.plan_tier == PlanTier.PAID:
        return True
    return get_remaining(account, today) > 0


def record_usage(
    db: Session,
    account_id: int,
    today: Optional[date] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> User:
    """
    Count one conversation for the user and return the refreshed row.
    Paid users are left untouched, and a free user already at the limit
    stays at the limit.
    """
    plan_store.validate_account_id(account_id)
    today = today or utc_today()

    limit = get_plan_limit(PlanTier.FREE.value, "max_conversations_per_day")
    updated = plan_store.run_db_operation(
        db, "record_usage", lambda: plan_store.increment_daily_usage(db, account_id, today, limit), policy
    )
    # No row updated means paid, at the limit, or missing; get_account raises for the last
    user = plan_store.run_db_operation(
        db, "load_account", lambda: plan_store.get_account(db, account_id), policy
    )
    if updated:
        logger.info(
            "[Usage] Counted conversation for user %s: %s used on %s",
            account_id, user.daily_usage_count, user.last_usage_date,
        )
    return user


def admit_usage_unit(
    db: Session,
    account_id: int,
    today: Optional[date] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> User:
    """
    Check and count one conversation in a single step.
    Raises USAGE_LIMIT_EXCEEDED when a free user has nothing left today.
    """
    plan_store.validate_account_id(account_id)
    today = today or utc_today()

    limit = get_plan_limit(PlanTier.FREE.value, "max_conversations_per_day")
    updated = plan_store.run_db_operation(
        db, "admit_usage", lambda: plan_store.increment_daily_usage(db, account_id, today, limit), policy
    )
    user = plan_store.run_db_operation(
        db, "load_account", lambda: plan_store.get_account(db, account_id), policy
    )
    if not updated and user.plan_tier == PlanTier.FREE:
        logger.info("[Usage] User %s has reached the daily conversation limit", account_id)
        raise usage_limit_exceeded(remaining=0, limit=limit)
    if updated:
        logger.info(
            "[Usage] Counted conversation for user %s: %s used on %s",
            account_id, user.daily_usage_count, user.last_usage_date,
        )
    return user


def can_start_usage_unit(db: Session, account_id: int, today: Optional[date] = None) -> bool:
    """Whether the user may start another conversation today."""
    user = plan_store.run_db_operation(
        db, "load_account", lambda: plan_store.get_account(db, account_id)
    )
    allowed = can_admit(user, today or utc_today())
    if not allowed:
        logger.info("[Usage] User %s has reached the daily conversation limit", account_id)
    return allowed


def record_usage_unit(db: Session, account_id: int, today: Optional[date] = None) -> None:
    record_usage(db, account_id, today)


def get_usage_status(db: Session, account_id: int, today: Optional[date] = None) -> UsageStatus:
    user = plan_store.run_db_operation(
        db, "load_account", lambda: plan_store.get_account(db, account_id)
    )
    remaining = get_remaining(user, today or utc_today())
    limit = UNLIMITED if user.plan_tier == PlanTier.PAID else get_plan_limit(PlanTier.FREE.value, "max_conversations_per_day")
    return UsageStatus(tier=user.plan_tier, remaining=remaining, limit=limit)


def reset_all_free_tier_counters(db: Session) -> int:
    """
    Reset daily counters for every free user.
    Intended to run once per UTC day; running it twice is harmless.
    """
    reset_count = plan_store.run_db_operation(
        db, "reset_daily_counters", lambda: plan_store.reset_free_tier_counters(db)
    )
    logger.info("[Usage] Daily conversation counters reset for %s free user(s)", reset_count)
    return reset_count
