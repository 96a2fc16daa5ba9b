"""
Send billing-related emails (payment failures, plan downgrades) when the user has notify_billing enabled.
Uses Resend if RESEND_API_KEY is set; otherwise no-op so webhooks never fail.
"""
import logging
import os
from typing import Optional

import resend

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
FROM_EMAIL = os.getenv("BILLING_FROM_EMAIL", "Chat Assistant <billing@example.com>")
APP_NAME = os.getenv("APP_NAME", "Chat Assistant")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


def _send(to_email: str, subject: str, html: str) -> bool:
    if not RESEND_API_KEY or not to_email:
        return False

    resend.api_key = RESEND_API_KEY
    try:
        params = {
            "from": FROM_EMAIL,
            "to": [to_email],
            "subject": subject,
            "html": html.strip(),
        }
        resend.Emails.send(params)
        logger.info("[billing_email] '%s' sent to %s", subject, to_email)
        return True
    except Exception as e:
        logger.warning("[billing_email] Failed to send '%s' to %s: %s", subject, to_email, e)
        return False


def send_payment_failed_email(to_email: str, downgraded: bool, reason: Optional[str] = None) -> bool:
    """
    Tell the user a subscription payment failed.
    Returns True if sent, False if skipped or failed. Never raises.
    """
    subject = f"Action needed: your {APP_NAME} payment failed"
    html = f"""
    <p>Hi,</p>
    <p>We could not collect your latest {APP_NAME} subscription payment.</p>
    """
    if reason:
        html += f"<p><strong>Reason:</strong> {reason}</p>"
    if downgraded:
        html += f"""
        <p>Your subscription has been suspended, so your account is now on the free plan.
        You can resubscribe at any time from <a href="{FRONTEND_URL}/account">your account page</a>.</p>
        """
    else:
        html += """
        <p>PayPal will retry the payment automatically. Please make sure your payment method is up to date.</p>
        """
    return _send(to_email, subject, html)


def send_plan_downgraded_email(to_email: str) -> bool:
    """Tell the user their paid plan ended. Never raises."""
    subject = f"Your {APP_NAME} subscription has ended"
    html = f"""
    <p>Hi,</p>
    <p>Your paid subscription has ended and your account is now on the free plan.
    Your conversations and settings are unchanged.</p>
    <p>You can upgrade again at any time from <a href="{FRONTEND_URL}/account">your account page</a>.</p>
    <p>Thank you for using {APP_NAME}.</p>
    """
    return _send(to_email, subject, html)
