# Domain Entities
# Pure business objects with no external dependencies
from .subscription import (
    AccountAlreadyExists,
    AccountNotFound,
    AccountUsage,
    CatalogIntegrityError,
    CheckMode,
    EntitlementDecision,
    EntitlementError,
    FeatureKind,
    FeatureUsage,
    LedgerUnavailable,
    PlanTier,
    UnknownPlan,
    UsageOverview,
    UsageStatus,
)

__all__ = [
    "FeatureKind",
    "CheckMode",
    "UsageStatus",
    "UsageOverview",
    "PlanTier",
    "AccountUsage",
    "EntitlementDecision",
    "FeatureUsage",
    "EntitlementError",
    "UnknownPlan",
    "AccountNotFound",
    "AccountAlreadyExists",
    "LedgerUnavailable",
    "CatalogIntegrityError",
]
