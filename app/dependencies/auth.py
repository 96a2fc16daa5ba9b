from fastapi import Header, Depends, Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import jwt  # PyJWT
import logging
import os
from typing import Optional
from app.core.errors import authentication_required, billing_configuration_error, database_error
from app.db.session import get_db
from app.models.user import PlanTier, User
from app.services.paypal_gateway import PayPalGateway

logger = logging.getLogger(__name__)


def verify_supabase_token(authorization: Optional[str] = Header(None)) -> dict:
    """
    Verifies the Supabase-issued HS256 JWT and returns its payload.
    Any missing, malformed or unverifiable token is an AUTHENTICATION error.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise authentication_required()

    token = authorization[len("Bearer "):].strip()
    # Reject common invalid token values sent by the frontend before login
    if not token or token.lower() in ("null", "undefined", "none"):
        logger.info("[AUTH] Rejected empty token value")
        raise authentication_required()

    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        logger.error("[AUTH] SUPABASE_JWT_SECRET is missing in environment variables")
        raise billing_configuration_error("SUPABASE_JWT_SECRET not set")

    try:
        # Decode AND verify in one step; the payload is not decoded again later
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience="authenticated",
            options={"verify_aud": True},
        )
    except jwt.PyJWTError as e:
        logger.info("[AUTH] Token verification failed: %s", e)
        raise authentication_required() from e

    return payload


def _find_user(db: Session, supabase_user_id: Optional[str], email: str) -> Optional[User]:
    # Prefer supabase_id (sub) so the same token always maps to the same user
    user = None
    if supabase_user_id:
        user = db.query(User).filter(User.supabase_id == supabase_user_id).first()
    if not user:
        user = db.query(User).filter(User.email.ilike(email)).first()
        if user and supabase_user_id and not user.supabase_id:
            user.supabase_id = supabase_user_id
            db.commit()
            logger.info("[AUTH] Set supabase_id on user %s (email lookup)", user.id)
    return user


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> int:
    """
    FastAPI dependency that verifies the Supabase token and returns the backend user ID.
    Auto-creates the user on first sight (lazy sync) on the free plan.
    """
    payload = verify_supabase_token(authorization)
    email = payload.get("email")
    supabase_user_id = payload.get("sub")
    if not email or not supabase_user_id:
        raise authentication_required()

    try:
        user = _find_user(db, supabase_user_id, email)
        if user:
            return user.id

        new_user = User(
            email=email.lower(),
            supabase_id=supabase_user_id,
            plan_tier=PlanTier.FREE,
            daily_usage_count=0,
        )
        db.add(new_user)
        try:
            db.commit()
        except IntegrityError:
            # Another request created the same user first
            db.rollback()
            user = _find_user(db, supabase_user_id, email)
            if user:
                logger.info("[AUTH] User found after concurrent creation: %s", user.id)
                return user.id
            raise
        db.refresh(new_user)
        logger.info("[AUTH] Auto-created user %s for email %s (lazy sync)", new_user.id, email)
        return new_user.id
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[AUTH] Database error while resolving user: %s", e)
        raise database_error("resolve_user", e) from e


def get_billing_gateway(request: Request) -> PayPalGateway:
    """The PayPal gateway created at startup."""
    return request.app.state.billing_gateway
