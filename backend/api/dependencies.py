"""
API dependencies wiring the entitlement engine to its collaborators.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from core.interfaces.repositories import UsageLedger
from core.plans import DEFAULT_CATALOG, PlanCatalog
from infrastructure.config import get_settings
from services.entitlements import EntitlementEngine

logger = logging.getLogger(__name__)


def get_plan_catalog() -> PlanCatalog:
    """Dependency returning the plan catalog."""
    return DEFAULT_CATALOG


@lru_cache
def get_usage_ledger() -> UsageLedger:
    """Dependency returning the configured usage ledger backend."""
    settings = get_settings()
    backend = settings.usage_ledger_backend

    if backend == "redis":
        from adapters.storage.redis_usage_ledger import RedisUsageLedger

        logger.info("Using Redis usage ledger")
        return RedisUsageLedger.from_url(settings.redis_url, key_prefix=settings.redis_key_prefix)

    if backend == "memory":
        from services.usage_ledger import InMemoryUsageLedger

        logger.warning("Using in-memory usage ledger; counters are lost on restart")
        return InMemoryUsageLedger()

    from infrastructure.database.connection import async_session_maker
    from services.usage_ledger import DatabaseUsageLedger

    return DatabaseUsageLedger(async_session_maker)


def get_entitlement_engine(
    catalog: Annotated[PlanCatalog, Depends(get_plan_catalog)],
    ledger: Annotated[UsageLedger, Depends(get_usage_ledger)],
) -> EntitlementEngine:
    """Dependency returning an engine bound to the catalog and ledger."""
    return EntitlementEngine(catalog=catalog, ledger=ledger)
