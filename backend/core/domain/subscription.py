"""Subscription entitlement domain entities."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class FeatureKind(str, Enum):
    """Metered features counted against a plan limit."""
    PERSONAS = "personas"
    TONE_ANALYSES = "toneAnalyses"
    CONTENT_GENERATION = "contentGeneration"
    CAMPAIGNS = "campaigns"

    @property
    def label(self) -> str:
        """Human-readable name used in limit notices and usage pages."""
        return FEATURE_LABELS[self]


FEATURE_LABELS = {
    FeatureKind.PERSONAS: "AI Personas",
    FeatureKind.TONE_ANALYSES: "Tone Analyses",
    FeatureKind.CONTENT_GENERATION: "Content Generations",
    FeatureKind.CAMPAIGNS: "Campaigns",
}


class CheckMode(str, Enum):
    """Whether an entitlement check only evaluates or also consumes."""
    PROBE = "probe"
    RESERVE = "reserve"


class UsageStatus(str, Enum):
    """Usage bands shown on the usage overview."""
    GOOD = "good"
    HIGH = "high"
    ALMOST_AT_LIMIT = "almost_at_limit"
    AT_LIMIT = "at_limit"


# Custom Exceptions
class EntitlementError(Exception):
    """Base exception for entitlement engine failures (never a plain denial)."""

    def __init__(
        self,
        message: str,
        account_id: Optional[str] = None,
        feature: Optional[FeatureKind] = None,
    ):
        super().__init__(message)
        self.account_id = account_id
        self.feature = feature


class UnknownPlan(EntitlementError):
    """Raised when a plan id is not in the catalog."""

    def __init__(self, plan_id: str, account_id: Optional[str] = None):
        super().__init__(f"Unknown plan: {plan_id!r}", account_id=account_id)
        self.plan_id = plan_id


class AccountNotFound(EntitlementError):
    """Raised when the usage ledger has no record for the account."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", account_id=account_id)


class AccountAlreadyExists(EntitlementError):
    """Raised when creating a usage record for an existing account."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} already exists", account_id=account_id)


class LedgerUnavailable(EntitlementError):
    """Raised when the usage ledger could not complete a read or write."""

    pass


class CatalogIntegrityError(ValueError):
    """Raised when plan tiers are inconsistent at catalog construction."""

    pass


@dataclass(frozen=True)
class PlanTier:
    """A named subscription level with a fixed price and per-feature caps."""

    id: str
    display_name: str
    monthly_price: Decimal
    limits: Mapping[FeatureKind, int]
    currency: str = "USD"

    def __post_init__(self):
        if not str(self.id).strip():
            raise CatalogIntegrityError("Plan tier id is required")
        if not isinstance(self.monthly_price, Decimal):
            object.__setattr__(self, "monthly_price", Decimal(str(self.monthly_price)))
        if self.monthly_price < 0:
            raise CatalogIntegrityError(f"Plan {self.id!r} has a negative price")

        limits = {}
        for key, value in dict(self.limits).items():
            try:
                feature = FeatureKind(key)
            except ValueError:
                raise CatalogIntegrityError(
                    f"Plan {self.id!r} defines a limit for unknown feature {key!r}"
                ) from None
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise CatalogIntegrityError(
                    f"Plan {self.id!r} limit for {feature.value} must be a non-negative integer"
                )
            limits[feature] = value

        missing = [feature.value for feature in FeatureKind if feature not in limits]
        if missing:
            raise CatalogIntegrityError(
                f"Plan {self.id!r} is missing limits for: {', '.join(missing)}"
            )
        object.__setattr__(self, "limits", MappingProxyType(limits))

    def limit_for(self, feature: FeatureKind) -> int:
        """Get the capacity of a feature on this tier."""
        return self.limits[FeatureKind(feature)]


@dataclass
class AccountUsage:
    """Per-account consumption counters for the current billing period."""

    account_id: str
    plan_id: str
    counters: dict = field(default_factory=dict)
    usage_reset_date: Optional[datetime] = None

    def __post_init__(self):
        counters = {feature: 0 for feature in FeatureKind}
        for key, value in self.counters.items():
            counters[FeatureKind(key)] = int(value)
        self.counters = counters

    def used(self, feature: FeatureKind) -> int:
        """Get the current counter for a feature."""
        return self.counters[FeatureKind(feature)]


@dataclass(frozen=True)
class EntitlementDecision:
    """Admit/deny result of an entitlement check.

    ``current_usage`` is the counter value the decision was made on; for an
    admitted reservation it is the value after the increment. ``next_tier``
    is only set on denials.
    """

    allowed: bool
    feature: FeatureKind
    current_usage: int
    limit: int
    current_plan_id: str
    next_tier: Optional[PlanTier] = None

    @property
    def remaining(self) -> int:
        """Reservations still available this period."""
        return max(self.limit - self.current_usage, 0)

    @property
    def upgrade_gap(self) -> Optional[int]:
        """How much more of the feature the next tier offers."""
        if self.next_tier is None:
            return None
        return self.next_tier.limits[self.feature] - self.limit


@dataclass(frozen=True)
class FeatureUsage:
    """One row of the account usage overview."""

    feature: FeatureKind
    used: int
    limit: int

    @property
    def label(self) -> str:
        return self.feature.label

    @property
    def percentage(self) -> int:
        if self.limit <= 0:
            return 100
        return min(100, round(self.used / self.limit * 100))

    @property
    def status(self) -> UsageStatus:
        if self.used >= self.limit:
            return UsageStatus.AT_LIMIT
        if self.percentage >= 90:
            return UsageStatus.ALMOST_AT_LIMIT
        if self.percentage >= 70:
            return UsageStatus.HIGH
        return UsageStatus.GOOD


@dataclass(frozen=True)
class UsageOverview:
    """Usage page for an account, built from one ledger snapshot."""

    account_id: str
    tier: PlanTier
    features: tuple[FeatureUsage, ...]
    usage_reset_date: Optional[datetime] = None
