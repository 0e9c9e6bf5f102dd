"""
Account usage database model.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from core.domain.subscription import AccountUsage, FeatureKind

from .base import Base, TimestampMixin


class AccountUsageRecord(Base, TimestampMixin):
    """Per-account metered feature counters for the current billing period."""

    __tablename__ = "account_usage"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    # Usage tracking
    personas_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tone_analyses_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_generated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    campaigns_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_reset_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_account_usage_plan", "plan_id"),
        Index("ix_account_usage_reset_date", "usage_reset_date"),
    )

    def to_domain(self) -> AccountUsage:
        """Convert to the AccountUsage domain entity."""
        return AccountUsage(
            account_id=self.account_id,
            plan_id=self.plan_id,
            counters={
                feature: getattr(self, column.key)
                for feature, column in USAGE_COLUMNS.items()
            },
            usage_reset_date=self.usage_reset_date,
        )

    def __repr__(self) -> str:
        return f"<AccountUsageRecord {self.account_id} plan={self.plan_id}>"


# Counter column per metered feature
USAGE_COLUMNS = {
    FeatureKind.PERSONAS: AccountUsageRecord.personas_used,
    FeatureKind.TONE_ANALYSES: AccountUsageRecord.tone_analyses_used,
    FeatureKind.CONTENT_GENERATION: AccountUsageRecord.content_generated,
    FeatureKind.CAMPAIGNS: AccountUsageRecord.campaigns_used,
}
