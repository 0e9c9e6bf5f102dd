"""
Usage ledger backends for tracking metered feature consumption.

The database ledger is the production store: every call runs in its own
transaction and the reservation path is a single conditional UPDATE, so
concurrent increments for one account/feature pair never lose updates and
never pass the ceiling. The in-memory ledger serves development and tests.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.domain.subscription import (
    AccountAlreadyExists,
    AccountNotFound,
    AccountUsage,
    FeatureKind,
    LedgerUnavailable,
)
from core.interfaces.repositories import UsageLedger
from infrastructure.database.models.usage import USAGE_COLUMNS, AccountUsageRecord

logger = logging.getLogger(__name__)


def next_reset_date(now: Optional[datetime] = None) -> datetime:
    """Get the first day of the month after ``now`` (UTC midnight)."""
    now = now or datetime.now(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class DatabaseUsageLedger(UsageLedger):
    """
    Usage ledger stored in the ``account_usage`` table.

    Owns its transactions: each method opens a session from the factory and
    commits before returning, so the counters are authoritative for every
    caller the moment a call completes.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        """
        Initialize database usage ledger.

        Args:
            session_maker: Factory for async database sessions
        """
        self._session_maker = session_maker

    async def create_account(self, account_id: str, plan_id: str) -> AccountUsage:
        usage = AccountUsage(
            account_id=account_id,
            plan_id=plan_id,
            usage_reset_date=next_reset_date(),
        )
        record = AccountUsageRecord(
            account_id=account_id,
            plan_id=plan_id,
            personas_used=0,
            tone_analyses_used=0,
            content_generated=0,
            campaigns_used=0,
            usage_reset_date=usage.usage_reset_date,
        )
        try:
            async with self._session_maker() as session, session.begin():
                session.add(record)
        except IntegrityError:
            raise AccountAlreadyExists(account_id) from None
        except SQLAlchemyError as e:
            raise self._unavailable("create account", account_id, e) from e

        logger.info("Created usage record for account %s on plan %s", account_id, plan_id)
        return usage

    async def get_plan_id(self, account_id: str) -> str:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(AccountUsageRecord.plan_id).where(
                        AccountUsageRecord.account_id == account_id
                    )
                )
                plan_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("read plan", account_id, e) from e

        if plan_id is None:
            raise AccountNotFound(account_id)
        return plan_id

    async def set_plan(self, account_id: str, plan_id: str) -> AccountUsage:
        try:
            async with self._session_maker() as session, session.begin():
                result = await session.execute(
                    update(AccountUsageRecord)
                    .where(AccountUsageRecord.account_id == account_id)
                    .values(plan_id=plan_id)
                )
                if result.rowcount == 0:
                    raise AccountNotFound(account_id)
                usage = (await self._load(session, account_id)).to_domain()
        except SQLAlchemyError as e:
            raise self._unavailable("change plan", account_id, e) from e

        logger.info("Moved account %s to plan %s", account_id, plan_id)
        return usage

    async def get_usage(self, account_id: str, feature: FeatureKind) -> int:
        column = USAGE_COLUMNS[FeatureKind(feature)]
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(column).where(AccountUsageRecord.account_id == account_id)
                )
                value = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("read usage", account_id, e) from e

        if value is None:
            raise AccountNotFound(account_id)
        return int(value)

    async def get_account_usage(self, account_id: str) -> AccountUsage:
        try:
            async with self._session_maker() as session:
                usage = (await self._load(session, account_id)).to_domain()
        except SQLAlchemyError as e:
            raise self._unavailable("read usage", account_id, e) from e
        return usage

    async def increment_usage(
        self,
        account_id: str,
        feature: FeatureKind,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        """
        Atomically increment a usage counter.

        Uses a SQL-level increment to avoid read-modify-write races under
        concurrent requests; the ceiling is part of the same UPDATE.

        Args:
            account_id: Account whose counter to bump
            feature: Metered feature
            ceiling: Only increment while the counter is below this value

        Returns:
            The new counter value, or None if the ceiling was already reached

        Raises:
            AccountNotFound: If the account has no usage record
            LedgerUnavailable: If the database call fails
        """
        feature = FeatureKind(feature)
        column = USAGE_COLUMNS[feature]
        stmt = (
            update(AccountUsageRecord)
            .where(AccountUsageRecord.account_id == account_id)
            .values({column.key: column + 1})
        )
        if ceiling is not None:
            stmt = stmt.where(column < ceiling)

        try:
            async with self._session_maker() as session, session.begin():
                result = await session.execute(stmt)
                # The updated row stays locked until commit, so this read sees our write
                current = await session.execute(
                    select(column).where(AccountUsageRecord.account_id == account_id)
                )
                value = current.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("increment usage", account_id, e) from e

        if value is None:
            raise AccountNotFound(account_id)
        if result.rowcount == 0:
            logger.info(
                "Usage ceiling %s reached for account %s feature %s",
                ceiling,
                account_id,
                feature.value,
            )
            return None

        logger.debug("Incremented %s usage for account %s to %d", feature.value, account_id, value)
        return int(value)

    async def reset_usage(self, account_id: str) -> AccountUsage:
        values = {column.key: 0 for column in USAGE_COLUMNS.values()}
        try:
            async with self._session_maker() as session, session.begin():
                result = await session.execute(
                    update(AccountUsageRecord)
                    .where(AccountUsageRecord.account_id == account_id)
                    .values(**values, usage_reset_date=next_reset_date())
                )
                if result.rowcount == 0:
                    raise AccountNotFound(account_id)
                usage = (await self._load(session, account_id)).to_domain()
        except SQLAlchemyError as e:
            raise self._unavailable("reset usage", account_id, e) from e

        logger.info("Reset usage counters for account %s", account_id)
        return usage

    async def delete_account(self, account_id: str) -> None:
        try:
            async with self._session_maker() as session, session.begin():
                result = await session.execute(
                    delete(AccountUsageRecord).where(AccountUsageRecord.account_id == account_id)
                )
        except SQLAlchemyError as e:
            raise self._unavailable("delete account", account_id, e) from e

        if result.rowcount == 0:
            raise AccountNotFound(account_id)
        logger.info("Deleted usage record for account %s", account_id)

    async def ping(self) -> None:
        try:
            async with self._session_maker() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Usage ledger database check failed: %s", e)
            raise LedgerUnavailable("Usage ledger database is unreachable") from e

    async def _load(self, session: AsyncSession, account_id: str) -> AccountUsageRecord:
        result = await session.execute(
            select(AccountUsageRecord)
            .where(AccountUsageRecord.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise AccountNotFound(account_id)
        return record

    @staticmethod
    def _unavailable(action: str, account_id: str, error: Exception) -> LedgerUnavailable:
        logger.error("Usage ledger failed to %s for account %s: %s", action, account_id, error)
        return LedgerUnavailable(
            f"Usage ledger could not {action}",
            account_id=account_id,
        )


class InMemoryUsageLedger(UsageLedger):
    """
    Process-local usage ledger.

    Counters are guarded by one asyncio.Lock per account/feature pair so
    concurrent reservations on the same event loop serialize correctly.
    Data is lost on restart; not for production.
    """

    def __init__(self):
        self._accounts: dict[str, AccountUsage] = {}
        self._locks: defaultdict[tuple[str, FeatureKind], asyncio.Lock] = defaultdict(
            asyncio.Lock
        )

    async def create_account(self, account_id: str, plan_id: str) -> AccountUsage:
        if account_id in self._accounts:
            raise AccountAlreadyExists(account_id)
        usage = AccountUsage(
            account_id=account_id,
            plan_id=plan_id,
            usage_reset_date=next_reset_date(),
        )
        self._accounts[account_id] = usage
        return self._snapshot(usage)

    async def get_plan_id(self, account_id: str) -> str:
        return self._get(account_id).plan_id

    async def set_plan(self, account_id: str, plan_id: str) -> AccountUsage:
        usage = self._get(account_id)
        usage.plan_id = plan_id
        return self._snapshot(usage)

    async def get_usage(self, account_id: str, feature: FeatureKind) -> int:
        return self._get(account_id).used(feature)

    async def get_account_usage(self, account_id: str) -> AccountUsage:
        return self._snapshot(self._get(account_id))

    async def increment_usage(
        self,
        account_id: str,
        feature: FeatureKind,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        feature = FeatureKind(feature)
        usage = self._get(account_id)
        async with self._locks[(account_id, feature)]:
            current = usage.counters[feature]
            if ceiling is not None and current >= ceiling:
                return None
            usage.counters[feature] = current + 1
            return current + 1

    async def reset_usage(self, account_id: str) -> AccountUsage:
        usage = self._get(account_id)
        for feature in FeatureKind:
            async with self._locks[(account_id, feature)]:
                usage.counters[feature] = 0
        usage.usage_reset_date = next_reset_date()
        return self._snapshot(usage)

    async def delete_account(self, account_id: str) -> None:
        self._get(account_id)
        del self._accounts[account_id]
        for feature in FeatureKind:
            self._locks.pop((account_id, feature), None)

    async def ping(self) -> None:
        """Process memory is always reachable."""

    def _get(self, account_id: str) -> AccountUsage:
        try:
            return self._accounts[account_id]
        except KeyError:
            raise AccountNotFound(account_id) from None

    @staticmethod
    def _snapshot(usage: AccountUsage) -> AccountUsage:
        return AccountUsage(
            account_id=usage.account_id,
            plan_id=usage.plan_id,
            counters=dict(usage.counters),
            usage_reset_date=usage.usage_reset_date,
        )
