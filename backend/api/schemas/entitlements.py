"""
Entitlement schemas for plan listing, usage overview and limit decisions.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.domain.subscription import (
    AccountUsage,
    EntitlementDecision,
    FeatureKind,
    FeatureUsage,
    PlanTier,
    UsageOverview,
    UsageStatus,
)


class PlanTierResponse(BaseModel):
    """A subscription tier with its per-feature limits."""

    id: str = Field(..., description="Plan id (free, starter, professional, premium)")
    name: str = Field(..., description="Display name")
    monthly_price: Decimal = Field(..., description="Monthly price")
    currency: str = Field(..., description="ISO currency code")
    limits: dict[FeatureKind, int] = Field(..., description="Capacity per metered feature")

    @classmethod
    def from_tier(cls, tier: PlanTier) -> "PlanTierResponse":
        return cls(
            id=tier.id,
            name=tier.display_name,
            monthly_price=tier.monthly_price,
            currency=tier.currency,
            limits=dict(tier.limits),
        )


class PlanListResponse(BaseModel):
    """All tiers, ascending by monthly price."""

    plans: list[PlanTierResponse]


class EntitlementDecisionResponse(BaseModel):
    """Result of an entitlement check."""

    allowed: bool
    feature: FeatureKind
    current_usage: int = Field(..., description="Counter value the decision was made on")
    limit: int
    current_plan_id: str
    next_tier: Optional[PlanTierResponse] = Field(
        None, description="Cheapest tier with a higher limit (denials only)"
    )

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementDecisionResponse":
        return cls(
            allowed=decision.allowed,
            feature=decision.feature,
            current_usage=decision.current_usage,
            limit=decision.limit,
            current_plan_id=decision.current_plan_id,
            next_tier=PlanTierResponse.from_tier(decision.next_tier) if decision.next_tier else None,
        )


class UpgradeOffer(BaseModel):
    """Upgrade call-to-action shown alongside a limit notice."""

    plan_id: str
    plan_name: str
    monthly_price: Decimal
    currency: str
    new_limit: int = Field(..., description="Limit for the feature on the upgrade tier")
    additional: int = Field(..., description="How many more than the current plan")
    message: str


class LimitNotice(BaseModel):
    """Presentation payload for a denied entitlement."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    message: str
    limit_type: FeatureKind = Field(..., alias="limitType")
    feature_label: str
    current_usage: int = Field(..., alias="currentUsage")
    limit: int
    current_plan: str = Field(..., alias="currentPlan")
    reset_hint: str
    upgrade: Optional[UpgradeOffer] = None


class FeatureUsageResponse(BaseModel):
    """Usage of one metered feature against its limit."""

    feature: FeatureKind
    label: str
    used: int
    limit: int
    percentage: int = Field(..., ge=0, le=100)
    status: UsageStatus

    @classmethod
    def from_usage(cls, usage: FeatureUsage) -> "FeatureUsageResponse":
        return cls(
            feature=usage.feature,
            label=usage.label,
            used=usage.used,
            limit=usage.limit,
            percentage=usage.percentage,
            status=usage.status,
        )


class UsageOverviewResponse(BaseModel):
    """Usage across all metered features for an account."""

    account_id: str
    plan: PlanTierResponse
    usage_reset_date: Optional[datetime] = None
    features: list[FeatureUsageResponse]

    @classmethod
    def from_overview(cls, overview: UsageOverview) -> "UsageOverviewResponse":
        return cls(
            account_id=overview.account_id,
            plan=PlanTierResponse.from_tier(overview.tier),
            usage_reset_date=overview.usage_reset_date,
            features=[FeatureUsageResponse.from_usage(item) for item in overview.features],
        )


class AccountUsageResponse(BaseModel):
    """Raw usage counters for an account."""

    account_id: str
    plan_id: str
    counters: dict[FeatureKind, int]
    usage_reset_date: Optional[datetime] = None

    @classmethod
    def from_usage(cls, usage: AccountUsage) -> "AccountUsageResponse":
        return cls(
            account_id=usage.account_id,
            plan_id=usage.plan_id,
            counters=dict(usage.counters),
            usage_reset_date=usage.usage_reset_date,
        )


class AccountCreateRequest(BaseModel):
    """Request to open a usage record for a new account."""

    account_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str = Field("free", min_length=1, max_length=50)


class PlanChangeRequest(BaseModel):
    """Request to move an account to another plan tier."""

    plan_id: str = Field(..., min_length=1, max_length=50)
