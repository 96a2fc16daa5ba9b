"""
PayPal webhook processing.

PayPal delivers at least once and in no particular order, so every handler is
safe to replay: upgrades and downgrades are idempotent, and subscription state
is re-read from PayPal instead of trusted from the event. Apart from a bad
signature, nothing here is reported back to PayPal as a failure; errors are
logged and the delivery is acknowledged so PayPal does not retry forever.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from app.core.errors import BillingError, invalid_webhook_signature
from app.models.user import User
from app.services import plan_store, subscription_lifecycle
from app.services.billing_email import send_payment_failed_email, send_plan_downgraded_email
from app.services.paypal_gateway import PayPalGateway, SubscriptionDetails, SubscriptionStatus, parse_subscription

logger = logging.getLogger(__name__)


class BillingEvent(str, Enum):
    SUBSCRIPTION_CREATED = "BILLING.SUBSCRIPTION.CREATED"
    SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
    PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"


# A failed payment only costs the user their plan once PayPal has given up
DOWNGRADE_ON_PAYMENT_FAILURE = (SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED)


@dataclass(frozen=True)
class WebhookResult:
    event_type: Optional[str]
    action: str  # upgraded | downgraded | unchanged | ignored | unmatched | error
    user_id: Optional[int] = None
    subscription_id: Optional[str] = None


async def handle_billing_webhook(
    headers: Mapping[str, str],
    raw_body: bytes,
    db: Session,
    gateway: PayPalGateway,
) -> WebhookResult:
    """
    Verify and process one PayPal webhook delivery.
    Raises an AUTHENTICATION BillingError only when the signature is invalid.
    """
    if not await gateway.verify_webhook_signature(headers, raw_body):
        logger.error("[Webhook] Invalid PayPal webhook signature")
        raise invalid_webhook_signature()

    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.error("[Webhook] Verified delivery is not valid JSON; acknowledging")
        return WebhookResult(event_type=None, action="error")

    event_type = event.get("event_type") if isinstance(event, dict) else None
    try:
        return await dispatch_event(event, db, gateway)
    except Exception as e:
        # Acknowledge anyway: a 5xx here would make PayPal redeliver indefinitely
        db.rollback()
        logger.exception("[Webhook] Error processing %s event: %s", event_type, e)
        return WebhookResult(event_type=event_type, action="error")


async def dispatch_event(event: dict, db: Session, gateway: PayPalGateway) -> WebhookResult:
    event_type = event.get("event_type")
    resource = event.get("resource") or {}
    logger.info("[Webhook] Processing PayPal event %s (id=%s)", event_type, event.get("id"))

    if event_type == BillingEvent.SUBSCRIPTION_CREATED:
        return await _handle_subscription_created(db, gateway, resource)
    elif event_type == BillingEvent.SUBSCRIPTION_CANCELLED:
        return _handle_subscription_cancelled(db, resource)
    elif event_type == BillingEvent.PAYMENT_FAILED:
        return await _handle_payment_failed(db, gateway, resource)

    logger.info("[Webhook] Ignoring unhandled event type: %s", event_type)
    return WebhookResult(event_type=event_type, action="ignored")


def _resolve_subscriber(db: Session, subscription_id: str, details: SubscriptionDetails) -> Optional[User]:
    """
    Find the user a subscription belongs to, in priority order:
    1. a user already linked to this subscription
    2. custom_id (our user id, set when the subscription was created)
    3. the PayPal subscriber's email address
    """
    user = plan_store.find_by_subscription_id(db, subscription_id)
    if user:
        return user

    if details.custom_id:
        user = plan_store.find_by_id(db, details.custom_id)
        if user:
            logger.info("[Webhook] Resolved subscription %s via custom_id %s", subscription_id, details.custom_id)
            return user

    if details.subscriber_email:
        user = plan_store.find_by_email(db, details.subscriber_email)
        if user:
            logger.info("[Webhook] Resolved subscription %s via subscriber email", subscription_id)
            return user

    return None


async def _handle_subscription_created(db: Session, gateway: PayPalGateway, resource: dict) -> WebhookResult:
    event_type = BillingEvent.SUBSCRIPTION_CREATED.value
    subscription_id = resource.get("id")
    if not subscription_id:
        logger.warning("[Webhook] %s without a subscription id", event_type)
        return WebhookResult(event_type=event_type, action="ignored")

    # PayPal's current view wins over the (possibly stale) event payload
    try:
        details = await gateway.get_subscription_details(subscription_id)
    except BillingError as e:
        logger.warning("[Webhook] Could not re-read subscription %s (%s); using event payload", subscription_id, e)
        details = parse_subscription(resource)

    if not details.is_active:
        logger.info(
            "[Webhook] Subscription %s created but not active (status: %s)",
            subscription_id, details.status.value,
        )
        return WebhookResult(event_type=event_type, action="unchanged", subscription_id=subscription_id)

    user = _resolve_subscriber(db, subscription_id, details)
    if not user:
        logger.warning(
            "[Webhook] No user found for subscription %s (custom_id=%s, email=%s)",
            subscription_id, details.custom_id, details.subscriber_email,
        )
        return WebhookResult(event_type=event_type, action="unmatched", subscription_id=subscription_id)

    subscription_lifecycle.upgrade(db, user.id, subscription_id)
    return WebhookResult(event_type=event_type, action="upgraded", user_id=user.id, subscription_id=subscription_id)


def _handle_subscription_cancelled(db: Session, resource: dict) -> WebhookResult:
    event_type = BillingEvent.SUBSCRIPTION_CANCELLED.value
    subscription_id = resource.get("id")

    user = plan_store.find_by_subscription_id(db, subscription_id)
    if not user:
        logger.warning("[Webhook] No user found with subscription ID %s", subscription_id)
        return WebhookResult(event_type=event_type, action="unmatched", subscription_id=subscription_id)

    user_id, email, notify_billing = user.id, user.email, user.notify_billing
    subscription_lifecycle.downgrade(db, user_id)
    logger.info("[Webhook] User %s downgraded after subscription %s cancellation", user_id, subscription_id)

    if notify_billing and email:
        send_plan_downgraded_email(email)
    return WebhookResult(event_type=event_type, action="downgraded", user_id=user_id, subscription_id=subscription_id)


async def _handle_payment_failed(db: Session, gateway: PayPalGateway, resource: dict) -> WebhookResult:
    event_type = BillingEvent.PAYMENT_FAILED.value
    subscription_id = resource.get("id") or resource.get("billing_agreement_id")

    user = plan_store.find_by_subscription_id(db, subscription_id)
    if not user:
        logger.warning("[Webhook] No user found with subscription ID %s", subscription_id)
        return WebhookResult(event_type=event_type, action="unmatched", subscription_id=subscription_id)

    user_id, email, notify_billing = user.id, user.email, user.notify_billing
    # End the read transaction before calling PayPal
    db.commit()

    details = await gateway.get_subscription_details(subscription_id)
    downgraded = details.status in DOWNGRADE_ON_PAYMENT_FAILURE
    if downgraded:
        subscription_lifecycle.downgrade(db, user_id)
        logger.info(
            "[Webhook] User %s downgraded after payment failure (subscription %s is %s)",
            user_id, subscription_id, details.status.value,
        )
    else:
        logger.info(
            "[Webhook] Payment failed for subscription %s but status is %s, not downgrading user yet",
            subscription_id, details.status.value,
        )

    if notify_billing and email:
        last_failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
        reason = last_failed.get("reason_code")
        send_payment_failed_email(email, downgraded=downgraded, reason=reason)

    return WebhookResult(
        event_type=event_type,
        action="downgraded" if downgraded else "unchanged",
        user_id=user_id,
        subscription_id=subscription_id,
    )
