"""
Webhooks for the payment provider (PayPal Subscriptions).
Only an invalid signature is answered with an error; everything else is
acknowledged with 200 so PayPal stops redelivering.
"""
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from app.core.errors import BillingError, ErrorKind
from app.db.session import get_db
from app.dependencies.auth import get_billing_gateway
from app.services.paypal_gateway import PayPalGateway
from app.services.webhook_dispatcher import handle_billing_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PayPalGateway = Depends(get_billing_gateway),
):
    raw_body = await request.body()
    try:
        result = await handle_billing_webhook(request.headers, raw_body, db, gateway)
    except BillingError as e:
        if e.kind is ErrorKind.AUTHENTICATION:
            return JSONResponse(status_code=401, content={"error": e.user_message})
        raise

    logger.info(
        "[Webhook] %s -> %s (user=%s, subscription=%s)",
        result.event_type, result.action, result.user_id, result.subscription_id,
    )
    return {"status": "success"}
