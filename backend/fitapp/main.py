"""FitApp billing — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from fitapp.api.deps import ensure_database_ready
from fitapp.api.v1.subscriptions import router as subscriptions_router
from fitapp.api.v1.webhooks import router as webhooks_router
from fitapp.billing.stripe_client import close_stripe_client
from fitapp.config import settings
from fitapp.errors import AppError, app_error_handler, request_validation_error_handler
from fitapp.services.maintenance import MaintenanceScheduler

# Configure root logger so all fitapp.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    scheduler = MaintenanceScheduler()
    if settings.maintenance_enabled:
        scheduler.start()
    yield
    # Shutdown — stop sweeps, release the Stripe transport, dispose engine connections
    await scheduler.stop()
    await close_stripe_client()
    from fitapp.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription and billing core: Stripe checkout, webhooks, and reconciliation.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)

# Routers
app.include_router(subscriptions_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"], dependencies=[Depends(ensure_database_ready)])
async def health_check() -> dict[str, str]:
    """Health check endpoint (503 when the database is unreachable)."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
