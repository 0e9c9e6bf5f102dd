"""
Entitlement engine for metered subscription features.

Decides whether an account may perform a metered action given its plan
tier and current usage, and computes the upgrade path when it may not.
Plan catalog and usage ledger are injected; the engine keeps no state of
its own and re-reads usage on every call.
"""

import logging
from typing import Union

from core.domain.subscription import (
    CheckMode,
    EntitlementDecision,
    EntitlementError,
    FeatureKind,
    FeatureUsage,
    PlanTier,
    UsageOverview,
)
from core.interfaces.repositories import UsageLedger
from core.plans import PlanCatalog

logger = logging.getLogger(__name__)


class EntitlementEngine:
    """
    Single source of truth for admit/deny and upgrade-path decisions.

    A denial is a normal outcome and is returned as data. Only system
    failures (UnknownPlan, AccountNotFound, LedgerUnavailable) raise.
    """

    def __init__(self, catalog: PlanCatalog, ledger: UsageLedger):
        self.catalog = catalog
        self.ledger = ledger

    async def check_and_maybe_reserve(
        self,
        account_id: str,
        feature: Union[FeatureKind, str],
        mode: Union[CheckMode, str] = CheckMode.PROBE,
    ) -> EntitlementDecision:
        """
        Evaluate a metered action and, in reserve mode, consume one unit.

        Args:
            account_id: Account performing the action
            feature: Metered feature being used
            mode: PROBE only evaluates; RESERVE also increments usage on success

        Returns:
            EntitlementDecision; ``allowed`` is True iff usage < limit

        Raises:
            ValueError: If feature or mode is not recognised
            UnknownPlan: If the account references a plan missing from the catalog
            AccountNotFound: If the ledger has no record for the account
            LedgerUnavailable: If the ledger could not complete a call
        """
        feature = FeatureKind(feature)
        mode = CheckMode(mode)

        try:
            tier = await self._tier_for(account_id)
            used = await self.ledger.get_usage(account_id, feature)
            limit = tier.limits[feature]

            if used >= limit:
                return self._deny(account_id, feature, tier, used)

            if mode is CheckMode.PROBE:
                return EntitlementDecision(
                    allowed=True,
                    feature=feature,
                    current_usage=used,
                    limit=limit,
                    current_plan_id=tier.id,
                )

            new_value = await self.ledger.increment_usage(account_id, feature, ceiling=limit)
            if new_value is None:
                # A concurrent reservation took the last unit between read and increment
                used = await self.ledger.get_usage(account_id, feature)
                return self._deny(account_id, feature, tier, used)
        except EntitlementError as e:
            e.account_id = e.account_id or account_id
            e.feature = e.feature or feature
            logger.error(
                "Entitlement check failed for account %s feature %s: %s",
                account_id,
                feature.value,
                e,
                extra={"account_id": account_id, "feature": feature.value},
            )
            raise

        logger.debug(
            "Reserved %s for account %s (%d/%d)",
            feature.value,
            account_id,
            new_value,
            limit,
        )
        return EntitlementDecision(
            allowed=True,
            feature=feature,
            current_usage=new_value,
            limit=limit,
            current_plan_id=tier.id,
        )

    async def usage_overview(self, account_id: str) -> UsageOverview:
        """
        Get usage against limits for every metered feature of an account.

        Tier and counters come from the same ledger snapshot.

        Raises:
            UnknownPlan: If the account references a plan missing from the catalog
            AccountNotFound: If the ledger has no record for the account
            LedgerUnavailable: If the ledger could not complete a call
        """
        try:
            usage = await self.ledger.get_account_usage(account_id)
            tier = self.catalog.get_tier(usage.plan_id)
        except EntitlementError as e:
            e.account_id = e.account_id or account_id
            logger.error(
                "Usage overview failed for account %s: %s",
                account_id,
                e,
                extra={"account_id": account_id},
            )
            raise

        return UsageOverview(
            account_id=account_id,
            tier=tier,
            features=tuple(
                FeatureUsage(feature=feature, used=usage.used(feature), limit=tier.limits[feature])
                for feature in FeatureKind
            ),
            usage_reset_date=usage.usage_reset_date,
        )

    async def _tier_for(self, account_id: str) -> PlanTier:
        plan_id = await self.ledger.get_plan_id(account_id)
        return self.catalog.get_tier(plan_id)

    def _deny(
        self,
        account_id: str,
        feature: FeatureKind,
        tier: PlanTier,
        used: int,
    ) -> EntitlementDecision:
        limit = tier.limits[feature]
        next_tier = self.catalog.next_tier(tier, feature)
        logger.warning(
            "Account %s has reached limit for %s on plan %s: %d/%d",
            account_id,
            feature.value,
            tier.id,
            used,
            limit,
            extra={"account_id": account_id, "feature": feature.value, "plan_id": tier.id},
        )
        return EntitlementDecision(
            allowed=False,
            feature=feature,
            current_usage=used,
            limit=limit,
            current_plan_id=tier.id,
            next_tier=next_tier,
        )
