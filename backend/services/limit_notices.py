"""
Limit notice projection.

Turns a denied EntitlementDecision into the payload the presentation layer
renders as the "limit reached" dialog. The engine never calls this; request
handlers do after receiving a denial.
"""

from api.schemas.entitlements import LimitNotice, UpgradeOffer
from core.domain.subscription import EntitlementDecision

LIMIT_TITLE = "Subscription Limit Reached"
RESET_HINT = "Your usage limits will reset at the beginning of your next billing period."


def build_limit_notice(decision: EntitlementDecision) -> LimitNotice:
    """
    Project a denial into a limit notice with an optional upgrade offer.

    Raises:
        ValueError: If the decision was allowed
    """
    if decision.allowed:
        raise ValueError("Cannot build a limit notice for an allowed decision")

    label = decision.feature.label
    upgrade = None
    if decision.next_tier is not None:
        tier = decision.next_tier
        new_limit = tier.limits[decision.feature]
        additional = decision.upgrade_gap
        upgrade = UpgradeOffer(
            plan_id=tier.id,
            plan_name=tier.display_name,
            monthly_price=tier.monthly_price,
            currency=tier.currency,
            new_limit=new_limit,
            additional=additional,
            message=(
                f"Upgrade to {tier.display_name} plan to get {new_limit} {label} "
                f"(that's {additional} more than your current plan)."
            ),
        )

    return LimitNotice(
        title=LIMIT_TITLE,
        message=f"You've reached your {label} limit for your current plan.",
        limit_type=decision.feature,
        feature_label=label,
        current_usage=decision.current_usage,
        limit=decision.limit,
        current_plan=decision.current_plan_id,
        reset_hint=RESET_HINT,
        upgrade=upgrade,
    )
