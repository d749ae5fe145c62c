"""gigledger Backend API - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gigledger import __version__
from gigledger.logging_config import setup_gigledger_logging

from .config import get_settings
from .database import get_lifecycle_engine
from .rate_limit import limiter
from .routes import (
    contracts_router,
    milestones_router,
    notifications_router,
    payments_router,
    webhooks_router,
)

logger = logging.getLogger("gigledger.api")

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    setup_gigledger_logging(settings.log_level)
    logger.info(f"Starting gigledger API (debug={settings.debug})")
    yield
    # Shutdown
    logger.info("Shutting down gigledger API")


app = FastAPI(
    title="gigledger API",
    description="Contract, milestone and escrow lifecycle for the freelance marketplace",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(contracts_router, prefix=API_PREFIX)
app.include_router(milestones_router, prefix=API_PREFIX)
app.include_router(payments_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)
app.include_router(webhooks_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "gigledger-api",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with an actual ledger read."""
    ledger_status = "disconnected"
    try:
        engine = get_lifecycle_engine()
        engine.ledger.list_contracts(limit=1)
        ledger_status = "connected"
    except Exception as e:
        ledger_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if ledger_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "ledger": ledger_status,
    }
