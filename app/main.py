"""
Chat Assistant Plan & Billing API
Daily conversation allowances for free users and PayPal subscriptions for paid users.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

# Render captures stdout; configure logging once for every module
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run Alembic migrations on startup. Uses alembic.ini and DATABASE_URL.
    Fails startup if migrations fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        logger.error("DATABASE_URL is not set. Alembic migrations will not run.")
        return
    # Normalize postgres:// -> postgresql:// for SQLAlchemy
    if db_url.startswith("postgres://"):
        db_url = "postgresql://" + db_url[10:]
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("sqlalchemy.url", db_url)
        alembic_cfg.attributes["skip_logging_config"] = True
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise


from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api.routes import cron, subscription, toolkits, usage, webhooks
from app.core.errors import BillingError, ErrorKind, internal_error
from app.db.session import engine
from app.db.base import Base
# Import all models to ensure they're registered with Base
from app.models import User  # noqa: F401
from app.services.paypal_gateway import PayPalGateway

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

app = FastAPI(title="Chat Assistant Plan & Billing API")


@app.on_event("startup")
async def startup_event():
    """Create tables, run Alembic migrations, then build the PayPal client."""
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        logger.error("Error creating tables: %s", e)
        raise

    run_migrations()

    app.state.billing_gateway = PayPalGateway.from_env()


@app.on_event("shutdown")
async def shutdown_event():
    gateway = getattr(app.state, "billing_gateway", None)
    if gateway is not None:
        await gateway.aclose()


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, error: BillingError):
    match error.kind:
        case ErrorKind.DATABASE | ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE | ErrorKind.CONFIGURATION | ErrorKind.INTERNAL:
            logger.error("%s %s failed: %s", request.method, request.url.path, error)
        case ErrorKind.USAGE_LIMIT_EXCEEDED:
            logger.info("[Usage] %s %s refused: %s", request.method, request.url.path, error)
        case _:
            logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, error.code, error)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, error: Exception):
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, error)
    fallback = internal_error()
    return JSONResponse(status_code=fallback.status_code, content=fallback.to_dict())


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        FRONTEND_URL,
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_origin_regex=r"https://.*\.onrender\.com",  # Render deployments
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(usage.router, prefix="/api/usage", tags=["Usage"])
app.include_router(subscription.router, prefix="/api/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(cron.router, prefix="/api/cron", tags=["Cron"])
app.include_router(toolkits.router, prefix="/api/toolkits", tags=["Toolkits"])


@app.get("/health")
def health():
    return {"status": "ok"}
