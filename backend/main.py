"""Tovably Entitlements - Main FastAPI Application."""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import api_router
from core.domain.subscription import (
    AccountNotFound,
    EntitlementError,
    LedgerUnavailable,
    UnknownPlan,
)
from infrastructure.config import get_settings
from infrastructure.database import close_db, init_db
from infrastructure.logging_config import setup_logging

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Configure logging before anything else so all startup messages use the
    # correct format: JSON in production/staging, human-readable in development.
    setup_logging(
        json_output=settings.log_json or (not settings.debug and settings.is_production),
        level="DEBUG" if settings.debug else settings.log_level,
    )

    # Startup
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    logger.info("Usage ledger backend: %s", settings.usage_ledger_backend)

    if settings.is_development and settings.usage_ledger_backend == "database":
        logger.info("Development mode - initializing database...")
        await init_db()

    logger.info("Application started successfully!")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if settings.usage_ledger_backend == "redis":
        from api.dependencies import get_usage_ledger

        await get_usage_ledger().close()

    await close_db()
    logger.info("Application stopped.")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Subscription entitlement enforcement for metered content features",
    version=settings.app_version,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)


def _error_context(exc: EntitlementError) -> dict:
    return {
        "account_id": exc.account_id,
        "feature": exc.feature.value if exc.feature else None,
    }


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    logger.warning("Account not found: %s", exc.account_id, extra=_error_context(exc))
    return JSONResponse(
        status_code=404,
        content={"detail": "Account not found", "error_code": "account_not_found"},
    )


@app.exception_handler(UnknownPlan)
async def unknown_plan_handler(request: Request, exc: UnknownPlan):
    # Stored plan id missing from the catalog: data-consistency problem, not a user error
    logger.error(
        "Account %s references unknown plan %r",
        exc.account_id,
        exc.plan_id,
        extra={**_error_context(exc), "plan_id": exc.plan_id},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Entitlements unavailable", "error_code": "unknown_plan"},
    )


@app.exception_handler(LedgerUnavailable)
async def ledger_unavailable_handler(request: Request, exc: LedgerUnavailable):
    logger.error("Usage ledger unavailable: %s", exc, extra=_error_context(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Entitlements unavailable", "error_code": "ledger_unavailable"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    # Log full stack trace in dev only; production logs only type+message, truncated
    if settings.environment == "production":
        logger.error("Unhandled exception: %s: %s", type(exc).__name__, str(exc)[:200])
    else:
        logger.error("Unhandled exception: %s", str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time"] = f"{duration_ms:.1f}ms"

    # Skip logging for health check endpoints to avoid log noise
    path = request.url.path
    if not path.startswith("/api/v1/health"):
        logger.info(
            "%s %s %s %.1fms",
            request.method,
            path,
            response.status_code,
            round(duration_ms, 1),
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 1),
            },
        )
    return response


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    incoming = request.headers.get("X-Request-ID")
    # Only accept the caller's ID if it is a valid UUID to prevent log injection
    if incoming:
        try:
            uuid.UUID(incoming)
            request_id = incoming
        except ValueError:
            request_id = str(uuid.uuid4())
    else:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Include API routes
app.include_router(api_router, prefix="/api/v1")


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=settings.workers,
    )
