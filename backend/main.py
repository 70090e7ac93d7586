"""
FastAPI application entry point for the Enrollbot session server.

The liveness reaper runs in-process on a background thread for the
lifetime of the app unless LIVENESS_REAPER_ENABLED is false.

Client responses are signed with the Ed25519 key at RESPONSE_SIGNING_KEY_PATH.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from enrollbot.api.routes import health
from enrollbot.api.routes import app_sessions
from enrollbot.api.routes import webhooks_stripe
from enrollbot.config.session_policy import get_session_policy
from enrollbot.database.session import get_engine, get_session_factory, init_schema
from enrollbot.platform.response_signing import SigningError, init_response_signer
from enrollbot.workers.liveness_reaper import LivenessReaper

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _reaper_enabled() -> bool:
    return os.getenv("LIVENESS_REAPER_ENABLED", "true").lower() not in ("0", "false", "no")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Enrollbot API")

    app.state.reaper = None

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. All client endpoints will return 503 "
            "and the liveness reaper will not run."
        )
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found, URL may be malformed)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

        try:
            init_schema(get_engine())
        except Exception as e:
            logger.exception("Schema initialisation failed", extra={"error": str(e)})

        if _reaper_enabled():
            reaper = LivenessReaper(get_session_factory(), policy=get_session_policy())
            reaper.start()
            app.state.reaper = reaper
        else:
            logger.warning("Liveness reaper disabled by LIVENESS_REAPER_ENABLED")

    # Signing key is loaded once here; routes reuse the cached signer
    try:
        init_response_signer()
    except SigningError as e:
        logger.error(
            "Response signing key could not be loaded. Signed client endpoints will return 503.",
            extra={"error": str(e)},
        )

    if not os.getenv("STRIPE_WEBHOOK_SECRET"):
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Stripe webhooks will return 503.")

    yield

    # Shutdown
    logger.info("Shutting down Enrollbot API")
    if app.state.reaper is not None:
        app.state.reaper.stop()


# Create FastAPI app
app = FastAPI(
    title="Enrollbot API",
    description="Usage sessions, entitlements and credits for the Enrollbot client",
    version="1.0.0",
    lifespan=lifespan
)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Include desktop client routes (client key authentication)
app.include_router(app_sessions.router)

# Include Stripe webhook routes (uses Stripe signature verification)
app.include_router(webhooks_stripe.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
