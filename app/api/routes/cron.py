"""
Scheduled jobs triggered over HTTP (e.g. Render cron or an external scheduler).
Requests must carry `Authorization: Bearer <CRON_SECRET_TOKEN>`.
"""
import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.services import usage_accountant

router = APIRouter()
logger = logging.getLogger(__name__)


def _check_cron_token(authorization: Optional[str]) -> Optional[JSONResponse]:
    """Returns an error response, or None when the caller is authorized."""
    expected_token = os.getenv("CRON_SECRET_TOKEN", "")
    if not expected_token:
        logger.error("[Cron] CRON_SECRET_TOKEN environment variable is not set")
        return JSONResponse(status_code=500, content={"error": "Server configuration error"})

    provided = (authorization or "").strip()
    if not hmac.compare_digest(provided.encode(), f"Bearer {expected_token}".encode()):
        logger.warning("[Cron] Unauthorized daily-reset request")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    return None


@router.post("/daily-reset")
def daily_reset(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Reset every free user's daily conversation counter. Safe to run more than once a day."""
    error_response = _check_cron_token(authorization)
    if error_response is not None:
        return error_response

    logger.info("[Cron] Starting daily usage reset...")
    reset_count = usage_accountant.reset_all_free_tier_counters(db)
    logger.info("[Cron] Daily usage reset completed for %s user(s)", reset_count)
    return {
        "success": True,
        "message": "Daily usage counters reset successfully",
        "reset_count": reset_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/daily-reset")
def daily_reset_health():
    """Health probe for the scheduler; does not reset anything."""
    return {
        "status": "healthy",
        "endpoint": "daily-reset",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
