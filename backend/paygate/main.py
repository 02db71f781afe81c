"""Paygate — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from paygate.api.v1.invoices import router as invoices_router
from paygate.api.v1.payments import router as payments_router
from paygate.api.v1.subscriptions import router as subscriptions_router
from paygate.api.v1.webhooks import debug_router as webhooks_debug_router
from paygate.api.v1.webhooks import router as webhooks_router
from paygate.config import settings

# Configure root logger so all paygate.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; remote subscription calls will fail")
    yield
    # Shutdown: dispose engine connections
    from paygate.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription and payment service reconciling local state with Stripe.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Routers
app.include_router(subscriptions_router)
app.include_router(payments_router)
app.include_router(invoices_router)
app.include_router(webhooks_router)
if settings.debug:
    app.include_router(webhooks_debug_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
