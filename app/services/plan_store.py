"""
Persistence for per-user plan state (tier, daily usage counters, PayPal subscription id).

All statements touch a single row of the users table, except the bulk daily
reset. Point reads and updates go through the ORM; the usage increment is a
single UPDATE computed by the database so concurrent increments never race.
"""
import logging
from datetime import date
from typing import Callable, Optional, TypeVar

from sqlalchemy import case, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import account_not_found, database_error, validation_error
from app.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from app.models.user import PlanTier, User

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_db_operation(
    db: Session,
    operation: str,
    fn: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> T:
    """
    Run ``fn`` under the retry policy, turning SQLAlchemy failures into
    retryable DATABASE errors. The session is rolled back before each retry.
    """
    def attempt() -> T:
        try:
            return fn()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[PlanStore] %s failed: %s", operation, e)
            raise database_error(operation, e) from e

    return policy.call(attempt)


def validate_account_id(account_id) -> int:
    if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id <= 0:
        raise validation_error("user_id", account_id)
    return account_id


def get_account(db: Session, account_id: int) -> User:
    """Load a user row or raise NOT_FOUND."""
    validate_account_id(account_id)
    user = db.query(User).filter(User.id == account_id).first()
    if not user:
        raise account_not_found(account_id)
    return user


def find_by_id(db: Session, account_id) -> Optional[User]:
    try:
        account_id = int(account_id)
    except (TypeError, ValueError):
        return None
    return db.query(User).filter(User.id == account_id).first()


def find_by_subscription_id(db: Session, subscription_id: str) -> Optional[User]:
    if not subscription_id:
        return None
    return db.query(User).filter(User.paypal_subscription_id == str(subscription_id)).first()


def find_by_email(db: Session, email: str) -> Optional[User]:
    if not email:
        return None
    return db.query(User).filter(User.email.ilike(email.strip())).first()


def increment_daily_usage(db: Session, account_id: int, today: date, limit: int) -> int:
    """
    Atomically count one usage unit for a FREE user still under ``limit``.

    Same day -> daily_usage_count + 1, new day (or never used) -> 1, always
    stamping last_usage_date = today. The limit is checked in the same
    statement, so concurrent callers cannot push the count past it. Returns
    the number of rows updated (0 when the user is PAID, at the limit, or
    does not exist).
    """
    stmt = (
        update(User)
        .where(
            User.id == account_id,
            User.plan_tier == PlanTier.FREE,
            or_(
                User.last_usage_date.is_(None),
                User.last_usage_date != today,
                User.daily_usage_count < limit,
            ),
        )
        .values(
            daily_usage_count=case(
                (User.last_usage_date == today, User.daily_usage_count + 1),
                else_=1,
            ),
            last_usage_date=today,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount


def reset_free_tier_counters(db: Session) -> int:
    """Zero the usage counters of every FREE user. Returns rows touched."""
    stmt = (
        update(User)
        .where(User.plan_tier == PlanTier.FREE)
        .values(daily_usage_count=0, last_usage_date=None)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount
