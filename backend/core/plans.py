"""
Plan configuration for subscription tiers.

This module is the single source of truth for plan limits and prices.
It lives in core/ so both service and API layers can import from it
without creating circular dependencies.
"""

from typing import Iterable, Mapping, Optional

from .domain.subscription import (
    CatalogIntegrityError,
    FeatureKind,
    PlanTier,
    UnknownPlan,
)

# Plan configuration with prices and per-period limits
PLANS = {
    "free": {
        "name": "Free",
        "price_monthly": "0",
        "limits": {
            "personas": 1,
            "toneAnalyses": 1,
            "contentGeneration": 5,
            "campaigns": 0,
        },
    },
    "starter": {
        "name": "Starter",
        "price_monthly": "19",
        "limits": {
            "personas": 5,
            "toneAnalyses": 5,
            "contentGeneration": 10,
            "campaigns": 2,
        },
    },
    "professional": {
        "name": "Professional",
        "price_monthly": "49",
        "limits": {
            "personas": 25,
            "toneAnalyses": 25,
            "contentGeneration": 100,
            "campaigns": 10,
        },
    },
    "premium": {
        "name": "Premium",
        "price_monthly": "99",
        "limits": {
            "personas": 100,
            "toneAnalyses": 100,
            "contentGeneration": 500,
            "campaigns": 10,
        },
    },
}

DEFAULT_CURRENCY = "USD"


class PlanCatalog:
    """
    Immutable, price-ordered collection of plan tiers.

    Construction fails fast when tiers share an id or a price, or when a
    tier is missing a limit for any feature.
    """

    def __init__(self, tiers: Iterable[PlanTier]):
        tiers = list(tiers)
        if not tiers:
            raise CatalogIntegrityError("Plan catalog must define at least one tier")

        by_id: dict[str, PlanTier] = {}
        prices: dict = {}
        for tier in tiers:
            if tier.id in by_id:
                raise CatalogIntegrityError(f"Duplicate plan id: {tier.id!r}")
            if tier.monthly_price in prices:
                raise CatalogIntegrityError(
                    f"Plans {prices[tier.monthly_price]!r} and {tier.id!r} share the price "
                    f"{tier.monthly_price}; tier order must be total"
                )
            by_id[tier.id] = tier
            prices[tier.monthly_price] = tier.id

        self._by_id = by_id
        self._ordered = tuple(sorted(tiers, key=lambda t: t.monthly_price))

    @classmethod
    def from_config(
        cls,
        plans: Mapping[str, Mapping],
        currency: str = DEFAULT_CURRENCY,
    ) -> "PlanCatalog":
        """Build a catalog from a PLANS-style mapping."""
        tiers = []
        for plan_id, plan in plans.items():
            if "limits" not in plan:
                raise CatalogIntegrityError(f"Plan {plan_id!r} has no limits")
            tiers.append(
                PlanTier(
                    id=plan_id,
                    display_name=plan.get("name", plan_id.title()),
                    monthly_price=plan.get("price_monthly", 0),
                    limits=plan["limits"],
                    currency=plan.get("currency", currency),
                )
            )
        return cls(tiers)

    def list_tiers(self) -> tuple[PlanTier, ...]:
        """Get all tiers ascending by monthly price."""
        return self._ordered

    def get_tier(self, plan_id: str) -> PlanTier:
        """Get a tier by id, raising UnknownPlan if it is not in the catalog."""
        try:
            return self._by_id[plan_id]
        except (KeyError, TypeError):
            raise UnknownPlan(str(plan_id)) from None

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._by_id

    def next_tier(self, current: PlanTier, feature: FeatureKind) -> Optional[PlanTier]:
        """
        Get the cheapest tier priced above ``current`` that raises the limit.

        Args:
            current: The account's current tier
            feature: Feature whose limit must be strictly higher

        Returns:
            The upgrade tier, or None when no pricier tier offers more
        """
        feature = FeatureKind(feature)
        current_limit = current.limits[feature]
        for tier in self._ordered:
            if tier.monthly_price <= current.monthly_price:
                continue
            if tier.limits[feature] > current_limit:
                return tier
        return None


# Default catalog built once at import; tiers never change at runtime
DEFAULT_CATALOG = PlanCatalog.from_config(PLANS)
