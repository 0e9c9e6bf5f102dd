"""
API request and response schemas.
"""

from .entitlements import (
    AccountCreateRequest,
    AccountUsageResponse,
    EntitlementDecisionResponse,
    FeatureUsageResponse,
    LimitNotice,
    PlanChangeRequest,
    PlanListResponse,
    PlanTierResponse,
    UpgradeOffer,
    UsageOverviewResponse,
)

__all__ = [
    "AccountCreateRequest",
    "AccountUsageResponse",
    "EntitlementDecisionResponse",
    "FeatureUsageResponse",
    "LimitNotice",
    "PlanChangeRequest",
    "PlanListResponse",
    "PlanTierResponse",
    "UpgradeOffer",
    "UsageOverviewResponse",
]
