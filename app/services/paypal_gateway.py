"""
PayPal Subscriptions integration.

Wraps the PayPal REST API behind four operations (create / get / cancel a
subscription, verify a webhook) so routes and the webhook dispatcher never
see PayPal's wire format. One PayPalGateway is built at startup, stored on
app.state and closed on shutdown.

Every call is bounded by a timeout. Timeouts, transport errors, 429 and 5xx
responses are retryable EXTERNAL_SERVICE_UNAVAILABLE errors; a timeout never
means the operation succeeded or failed, so callers re-query the subscription
to learn the real outcome.
"""
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

import httpx

from app.core.errors import (
    BillingError,
    ErrorKind,
    billing_configuration_error,
    external_service_unavailable,
    payment_failed,
    subscription_not_found,
    validation_error,
)
from app.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"

WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-transmission-sig",
    "paypal-cert-id",
    "paypal-transmission-id",
    "paypal-transmission-time",
)

# PayPal 422 issues that mean the buyer's payment itself was refused
_PAYMENT_ISSUE_MARKERS = ("PAYMENT", "INSTRUMENT", "DECLINED", "FUNDING")

# Refresh the OAuth token this many seconds before PayPal expires it
_TOKEN_EXPIRY_MARGIN = 60


class SubscriptionStatus(str, Enum):
    APPROVAL_PENDING = "APPROVAL_PENDING"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.APPROVED)


@dataclass(frozen=True)
class SubscriptionDetails:
    id: str
    status: SubscriptionStatus
    plan_id: Optional[str] = None
    subscriber_email: Optional[str] = None
    custom_id: Optional[str] = None  # Our user id, set when the subscription was created

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class CreatedSubscription:
    id: str
    status: SubscriptionStatus
    approval_url: str


def parse_subscription(data: dict) -> SubscriptionDetails:
    """Build SubscriptionDetails from a PayPal subscription resource."""
    raw_status = (data.get("status") or "").upper()
    try:
        status = SubscriptionStatus(raw_status)
    except ValueError:
        raise BillingError(
            ErrorKind.INTERNAL,
            f"Unknown PayPal subscription status: {raw_status!r}",
            "An unexpected error occurred. Please try again.",
            context={"subscription_id": data.get("id")},
        )
    subscriber = data.get("subscriber") or {}
    return SubscriptionDetails(
        id=str(data.get("id")),
        status=status,
        plan_id=data.get("plan_id"),
        subscriber_email=subscriber.get("email_address"),
        custom_id=data.get("custom_id"),
    )


class PayPalGateway:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = PAYPAL_SANDBOX_URL,
        webhook_id: Optional[str] = None,
        timeout: float = 15.0,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.base_url = (base_url or PAYPAL_SANDBOX_URL).rstrip("/")
        self.webhook_id = (webhook_id or "").strip()
        self.retry_policy = retry_policy
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_env(cls) -> "PayPalGateway":
        # Prefer the new env var name, but fall back to the old one for safety.
        client_id = os.getenv("PAYPAL_CLIENT_ID") or os.getenv("PAYPAL_API_KEY", "")
        gateway = cls(
            client_id=client_id,
            client_secret=os.getenv("PAYPAL_SECRET", ""),
            base_url=os.getenv("PAYPAL_BASE_URL", PAYPAL_SANDBOX_URL),
            webhook_id=os.getenv("PAYPAL_WEBHOOK_ID", ""),
            timeout=float(os.getenv("PAYPAL_TIMEOUT_SECONDS", "15")),
        )
        if gateway.configured:
            logger.info(
                "[PayPal] Client initialized (client_id=%s..., base_url=%s)",
                gateway.client_id[:5], gateway.base_url,
            )
        else:
            logger.error("[PayPal] %s", gateway.missing_config_message())
        return gateway

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def missing_config_message(self) -> str:
        """Human-readable message listing which PayPal settings are missing."""
        missing_parts = []
        if not self.client_id:
            missing_parts.append("PAYPAL_CLIENT_ID")
        if not self.client_secret:
            missing_parts.append("PAYPAL_SECRET")
        missing = " ".join(missing_parts) if missing_parts else "NONE"
        return f"PayPal API credentials are not configured. Missing: {missing}"

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- transport -------------------------------------------------------

    async def _get_access_token(self, operation: str) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        if not self.configured:
            raise billing_configuration_error(self.missing_config_message())

        try:
            r = await self._client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise external_service_unavailable(operation, f"token timeout: {e}") from e
        except httpx.RequestError as e:
            raise external_service_unavailable(operation, f"token request failed: {e}") from e

        if r.status_code in (401, 403):
            raise billing_configuration_error("PayPal rejected the client credentials")
        self._raise_for_status(r, operation)

        data = r.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        self._token_expires_at = time.monotonic() + max(0, expires_in - _TOKEN_EXPIRY_MARGIN)
        return self._access_token

    def _raise_for_status(self, r: httpx.Response, operation: str) -> None:
        if r.status_code < 400:
            return

        body_text = r.text or ""
        logger.warning("[PayPal] %s returned %s: %s", operation, r.status_code, body_text[:500])

        if r.status_code == 429 or r.status_code >= 500:
            raise external_service_unavailable(operation, f"HTTP {r.status_code}")

        try:
            body = r.json()
        except ValueError:
            body = {}
        details = (body.get("details") or []) if isinstance(body, dict) else []
        issues = [str(d.get("issue", "")) for d in details if isinstance(d, dict)]
        description = next(
            (d.get("description") for d in details if isinstance(d, dict) and d.get("description")),
            body.get("message") if isinstance(body, dict) else None,
        )

        if r.status_code == 404:
            raise subscription_not_found()
        if r.status_code == 422 and any(marker in issue for issue in issues for marker in _PAYMENT_ISSUE_MARKERS):
            raise payment_failed(description)
        raise billing_configuration_error(
            f"{operation} rejected with HTTP {r.status_code}: {', '.join(issues) or body_text[:200]}"
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        request_headers.update(headers or {})

        for attempt in range(2):
            token = await self._get_access_token(operation)
            request_headers["Authorization"] = f"Bearer {token}"
            try:
                r = await self._client.request(method, path, json=json_body, headers=request_headers)
            except httpx.TimeoutException as e:
                raise external_service_unavailable(operation, f"timeout: {e}") from e
            except httpx.RequestError as e:
                raise external_service_unavailable(operation, f"request failed: {e}") from e

            if r.status_code == 401 and attempt == 0:
                # Token revoked or expired early: fetch a new one and try once more
                self._access_token = None
                continue
            break

        self._raise_for_status(r, operation)
        return r

    # -- operations ------------------------------------------------------

    async def create_subscription(
        self,
        plan_id: str,
        custom_id: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CreatedSubscription:
        """
        Create a subscription in APPROVAL_PENDING state.
        The user must approve it on PayPal before the plan changes.
        """
        if not isinstance(plan_id, str) or not plan_id.strip():
            raise validation_error("plan_id", plan_id)

        payload = {"plan_id": plan_id.strip()}
        if custom_id:
            payload["custom_id"] = str(custom_id)
        application_context = {"user_action": "SUBSCRIBE_NOW", "shipping_preference": "NO_SHIPPING"}
        if return_url:
            application_context["return_url"] = return_url
        if cancel_url:
            application_context["cancel_url"] = cancel_url
        payload["application_context"] = application_context

        # Same request id on every retry so PayPal never creates two subscriptions
        headers = {"PayPal-Request-Id": str(uuid.uuid4()), "Prefer": "return=representation"}

        logger.info("[PayPal] Creating subscription for plan %s (custom_id=%s)", plan_id, custom_id)
        r = await self.retry_policy.acall(
            self._request, "POST", "/v1/billing/subscriptions", "create_subscription", payload, headers
        )
        data = r.json()
        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approval_url:
            logger.error("[PayPal] Missing approve link in response: %s", data)
            raise BillingError(
                ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE,
                "PayPal did not return an approval link",
                "Payment service returned an unexpected response. Please try again later.",
                context={"subscription_id": data.get("id")},
            )

        details = parse_subscription(data)
        logger.info("[PayPal] Created subscription %s (status %s)", details.id, details.status.value)
        return CreatedSubscription(id=details.id, status=details.status, approval_url=approval_url)

    async def get_subscription_details(self, subscription_id: str) -> SubscriptionDetails:
        if not isinstance(subscription_id, str) or not subscription_id.strip():
            raise validation_error("subscription_id", subscription_id)

        r = await self.retry_policy.acall(
            self._request, "GET", f"/v1/billing/subscriptions/{subscription_id.strip()}", "get_subscription_details"
        )
        return parse_subscription(r.json())

    async def cancel_subscription(self, subscription_id: str, reason: str) -> None:
        """
        Ask PayPal to cancel. Plan state is not touched here; the
        BILLING.SUBSCRIPTION.CANCELLED webhook drives the downgrade.
        """
        if not isinstance(subscription_id, str) or not subscription_id.strip():
            raise validation_error("subscription_id", subscription_id)

        # PayPal limits the reason to 128 characters
        payload = {"reason": (reason or "User requested cancellation")[:128]}
        await self.retry_policy.acall(
            self._request,
            "POST",
            f"/v1/billing/subscriptions/{subscription_id.strip()}/cancel",
            "cancel_subscription",
            payload,
        )
        logger.info("[PayPal] Cancellation requested for subscription %s", subscription_id)

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Check a webhook delivery with PayPal's verify-webhook-signature API.
        Returns False for missing headers, missing configuration, unparsable
        bodies, or any verification failure.
        """
        normalized = {str(k).lower(): v for k, v in (headers or {}).items()}
        missing = [name for name in WEBHOOK_SIGNATURE_HEADERS if not normalized.get(name)]
        if missing:
            logger.warning("[PayPal] Webhook missing signature headers: %s", missing)
            return False
        if not self.webhook_id:
            logger.error("[PayPal] PAYPAL_WEBHOOK_ID is not set; cannot verify webhook deliveries")
            return False

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            logger.warning("[PayPal] Webhook body is not valid JSON")
            return False

        payload = {
            "auth_algo": normalized.get("paypal-auth-algo"),
            "cert_url": normalized.get("paypal-cert-url"),
            "transmission_id": normalized["paypal-transmission-id"],
            "transmission_sig": normalized["paypal-transmission-sig"],
            "transmission_time": normalized["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        try:
            r = await self.retry_policy.acall(
                self._request,
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "verify_webhook_signature",
                payload,
            )
        except BillingError as e:
            logger.error("[PayPal] Webhook verification could not complete: %s", e)
            return False

        verification_status = (r.json() or {}).get("verification_status")
        if verification_status != "SUCCESS":
            logger.warning(
                "[PayPal] Webhook signature rejected (transmission_id=%s, status=%s)",
                normalized["paypal-transmission-id"], verification_status,
            )
            return False
        return True
