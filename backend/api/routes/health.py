"""Health check endpoints."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends

from api.dependencies import get_usage_ledger
from core.domain.subscription import LedgerUnavailable
from core.interfaces.repositories import UsageLedger
from infrastructure.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()

LEDGER_CHECK_TIMEOUT = 5.0


def _base_status() -> dict:
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "usage_ledger": settings.usage_ledger_backend,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", **_base_status()}


@router.get("/health/db")
async def health_check_ledger(ledger: Annotated[UsageLedger, Depends(get_usage_ledger)]):
    """Health check against the configured usage ledger store."""
    try:
        await asyncio.wait_for(ledger.ping(), timeout=LEDGER_CHECK_TIMEOUT)
        ledger_status = "connected"
    except TimeoutError:
        logger.error("Health check ledger timeout (%s)", settings.usage_ledger_backend)
        ledger_status = "error: ledger timeout"
    except LedgerUnavailable:
        ledger_status = "error: ledger check failed"

    return {
        "status": "healthy" if ledger_status == "connected" else "degraded",
        "ledger": ledger_status,
        **_base_status(),
    }


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
