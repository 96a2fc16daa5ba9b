from enum import Enum
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from app.db.base import Base


class PlanTier(str, Enum):
    """Billing tier of an account."""
    FREE = "free"
    PAID = "paid"


class User(Base):
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    supabase_id = Column(String, unique=True, index=True, nullable=True)  # Track Supabase user ID
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    notify_product_updates = Column(Boolean, default=True, nullable=False)  # Email for product/news
    notify_billing = Column(Boolean, default=True, nullable=False)  # Email for billing/plan changes
    is_active = Column(Boolean, default=True)

    # Plan state. Only the usage accountant writes the counters and only the
    # subscription lifecycle writes plan_tier / paypal_subscription_id.
    plan_tier = Column(
        SQLEnum(PlanTier, name="plan_tier", native_enum=False, length=16,
                values_callable=lambda tiers: [t.value for t in tiers]),
        default=PlanTier.FREE,
        nullable=False,
    )
    daily_usage_count = Column(Integer, default=0, nullable=False)  # Conversations started on last_usage_date
    last_usage_date = Column(Date, nullable=True)  # UTC calendar date of the last counted conversation
    paypal_subscription_id = Column(String, unique=True, index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, plan_tier={self.plan_tier}, daily_usage_count={self.daily_usage_count})>"
