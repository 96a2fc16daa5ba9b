"""
Error taxonomy for plan, usage and billing operations.

Every failure the service surfaces is a BillingError tagged with an ErrorKind.
Callers branch on ``error.kind`` (``match error.kind: ...``) instead of on
exception subclasses; the kind decides the HTTP status, whether the retry
policy may try again, and which stable code the client sees.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTHENTICATION_REQUIRED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    CONFIGURATION = "CONFIGURATION_ERROR"
    DATABASE = "DATABASE_ERROR"
    EXTERNAL_SERVICE_UNAVAILABLE = "EXTERNAL_SERVICE_UNAVAILABLE"
    INTERNAL = "INTERNAL_ERROR"


HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.PAYMENT_FAILED: 402,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.USAGE_LIMIT_EXCEEDED: 429,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.INTERNAL: 500,
    ErrorKind.DATABASE: 503,
    ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE: 503,
}


class BillingError(Exception):
    """A classified failure: {kind, retryable, user_message, context}."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        user_message: str,
        retryable: bool = False,
        context: Optional[dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.user_message = user_message
        self.retryable = retryable
        self.context = context or {}
        self.code = code or kind.value

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 500)

    def to_dict(self) -> dict:
        body = {
            "error": self.code,
            "message": self.user_message,
            "retryable": self.retryable,
            "context": self.context,
        }
        if self.kind is ErrorKind.USAGE_LIMIT_EXCEEDED:
            # Lets the client render an upgrade call-to-action instead of a generic failure
            body["upgrade_required"] = True
        return body

    def __repr__(self):
        return f"<BillingError(kind={self.kind.name}, retryable={self.retryable}, message={str(self)!r})>"


def validation_error(field: str, value: Any = None) -> BillingError:
    return BillingError(
        ErrorKind.VALIDATION,
        f"Validation failed for field: {field}",
        f"Invalid or missing value for '{field}'. Please check your input and try again.",
        context={"field": field, "value": value},
    )


def authentication_required() -> BillingError:
    return BillingError(
        ErrorKind.AUTHENTICATION,
        "User authentication required",
        "Please sign in to access subscription features",
    )


def invalid_webhook_signature() -> BillingError:
    return BillingError(
        ErrorKind.AUTHENTICATION,
        "Webhook signature verification failed",
        "Invalid webhook signature",
        code="PAYPAL_WEBHOOK_INVALID",
    )


def account_not_found(account_id: Any) -> BillingError:
    return BillingError(
        ErrorKind.NOT_FOUND,
        f"User with id {account_id} not found",
        "User account not found",
        context={"user_id": account_id},
        code="USER_NOT_FOUND",
    )


def subscription_not_found(account_id: Any = None) -> BillingError:
    return BillingError(
        ErrorKind.NOT_FOUND,
        "No active subscription found",
        "No active subscription found for your account",
        context={"user_id": account_id},
        code="SUBSCRIPTION_NOT_FOUND",
    )


def subscription_already_exists(account_id: Any) -> BillingError:
    return BillingError(
        ErrorKind.CONFLICT,
        f"User {account_id} already has an active subscription",
        "You already have an active subscription",
        context={"user_id": account_id},
        code="SUBSCRIPTION_ALREADY_EXISTS",
    )


def subscription_not_owned(account_id: Any, subscription_id: str) -> BillingError:
    return BillingError(
        ErrorKind.FORBIDDEN,
        f"Subscription {subscription_id} does not belong to user {account_id}",
        "This subscription does not belong to you",
        context={"subscription_id": subscription_id},
    )


def subscription_not_active(subscription_id: str, status: str) -> BillingError:
    return BillingError(
        ErrorKind.VALIDATION,
        f"Subscription {subscription_id} is not active (status: {status})",
        "Your subscription has not been approved yet. Please complete the PayPal approval and try again.",
        context={"subscription_id": subscription_id, "status": status},
        code="SUBSCRIPTION_NOT_ACTIVE",
    )


def usage_limit_exceeded(remaining: int = 0, limit: Optional[int] = None) -> BillingError:
    return BillingError(
        ErrorKind.USAGE_LIMIT_EXCEEDED,
        "Daily conversation limit exceeded",
        "You have reached your daily conversation limit. Upgrade to Premium for unlimited access.",
        context={"remaining": remaining, "limit": limit},
    )


def payment_failed(reason: Optional[str] = None) -> BillingError:
    return BillingError(
        ErrorKind.PAYMENT_FAILED,
        f"Payment failed: {reason or 'Unknown error'}",
        reason or "Payment could not be processed. Please check your payment method and try again.",
        context={"reason": reason},
    )


def billing_configuration_error(detail: str) -> BillingError:
    return BillingError(
        ErrorKind.CONFIGURATION,
        f"Billing configuration error: {detail}",
        "Payment system is not configured. Please contact support.",
        context={"detail": detail},
    )


def external_service_unavailable(operation: str, detail: Optional[str] = None) -> BillingError:
    return BillingError(
        ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE,
        f"PayPal unavailable during {operation}: {detail or 'no detail'}",
        "Payment service is temporarily unavailable. Please try again in a few minutes.",
        retryable=True,
        context={"operation": operation},
        code="PAYPAL_SERVICE_UNAVAILABLE",
    )


def database_error(operation: str, error: Optional[Exception] = None) -> BillingError:
    return BillingError(
        ErrorKind.DATABASE,
        f"Database operation failed: {operation} ({type(error).__name__ if error else 'unknown'})",
        "A temporary error occurred. Please try again.",
        retryable=True,
        context={"operation": operation},
    )


def internal_error() -> BillingError:
    return BillingError(
        ErrorKind.INTERNAL,
        "Unhandled internal error",
        "An unexpected error occurred. Please try again.",
    )
