"""
Pytest configuration and shared fixtures for the plan & billing backend.

The app reads its configuration from the environment at import time, so the
test database and secrets are set before anything under `app` is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-at-least-32-bytes"
os.environ.pop("FREE_DAILY_LIMIT", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("PAYPAL_PLAN_ID", None)

from datetime import date, timedelta
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.core.errors import subscription_not_found
from app.db.base import Base
from app.db.session import SessionLocal, engine, get_db
from app.dependencies.auth import get_billing_gateway, get_current_user_id
from app.main import app
from app.models.user import PlanTier, User
from app.services.paypal_gateway import CreatedSubscription, SubscriptionDetails, SubscriptionStatus
from app.services.usage_accountant import utc_today

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)



# =============================================================================
# Fake PayPal gateway
# =============================================================================


class FakeGateway:
    """In-memory stand-in for PayPalGateway with the same async surface."""

    def __init__(self):
        self.subscriptions: Dict[str, SubscriptionDetails] = {}
        self.signature_valid = True
        self.created: List[dict] = []
        self.cancelled: List[tuple] = []
        self.detail_lookups: List[str] = []
        self.fail_details_with = None

    def add_subscription(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        custom_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> SubscriptionDetails:
        details = SubscriptionDetails(
            id=subscription_id,
            status=status,
            plan_id="P-TEST",
            subscriber_email=email,
            custom_id=custom_id,
        )
        self.subscriptions[subscription_id] = details
        return details

    async def create_subscription(self, plan_id, custom_id=None, return_url=None, cancel_url=None):
        subscription_id = f"I-NEW{len(self.created) + 1}"
        self.created.append(
            {"plan_id": plan_id, "custom_id": custom_id, "return_url": return_url, "cancel_url": cancel_url}
        )
        self.add_subscription(subscription_id, SubscriptionStatus.APPROVAL_PENDING, custom_id=custom_id)
        return CreatedSubscription(
            id=subscription_id,
            status=SubscriptionStatus.APPROVAL_PENDING,
            approval_url=f"https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token={subscription_id}",
        )

    async def get_subscription_details(self, subscription_id):
        self.detail_lookups.append(subscription_id)
        if self.fail_details_with is not None:
            raise self.fail_details_with
        if subscription_id not in self.subscriptions:
            raise subscription_not_found()
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id, reason):
        self.cancelled.append((subscription_id, reason))

    async def verify_webhook_signature(self, headers, raw_body):
        return self.signature_valid

    async def aclose(self):
        pass


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory SQLite engine."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(
        plan_tier: PlanTier = PlanTier.FREE,
        daily_usage_count: int = 0,
        last_usage_date: Optional[date] = None,
        paypal_subscription_id: Optional[str] = None,
        email: Optional[str] = None,
        **fields,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            supabase_id=fields.pop("supabase_id", f"sb-{counter['n']}"),
            plan_tier=plan_tier,
            daily_usage_count=daily_usage_count,
            last_usage_date=last_usage_date,
            paypal_subscription_id=paypal_subscription_id,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def today() -> date:
    return utc_today()


@pytest.fixture
def yesterday(today) -> date:
    return today - timedelta(days=1)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# =============================================================================
# API client
# =============================================================================


@pytest.fixture
def current_user(make_user) -> User:
    return make_user()


@pytest.fixture
def client(db, gateway, current_user):
    """TestClient with the database, auth and PayPal dependencies overridden."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    user_id = current_user.id
    app.dependency_overrides[get_current_user_id] = lambda: user_id
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    try:
        # Not used as a context manager, so startup (migrations, real PayPal client) never runs
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
