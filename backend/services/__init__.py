"""
Service layer for business logic.
"""

from services.entitlements import EntitlementEngine
from services.limit_notices import build_limit_notice
from services.usage_ledger import DatabaseUsageLedger, InMemoryUsageLedger, next_reset_date

__all__ = [
    "EntitlementEngine",
    "build_limit_notice",
    "DatabaseUsageLedger",
    "InMemoryUsageLedger",
    "next_reset_date",
]
