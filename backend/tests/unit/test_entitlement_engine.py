"""
Unit tests for the EntitlementEngine.

The engine runs against the in-memory ledger so decisions, reservations
and concurrency behaviour are exercised end to end without infrastructure.
Failure paths use AsyncMock ledgers.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.domain.subscription import (
    AccountNotFound,
    AccountUsage,
    CheckMode,
    FeatureKind,
    LedgerUnavailable,
    UnknownPlan,
    UsageStatus,
)
from core.interfaces.repositories import UsageLedger
from core.plans import PlanCatalog
from infrastructure.database.models import Base
from services.entitlements import EntitlementEngine
from services.usage_ledger import DatabaseUsageLedger, InMemoryUsageLedger

pytestmark = pytest.mark.asyncio


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _consume(ledger: InMemoryUsageLedger, account_id: str, feature: FeatureKind, n: int):
    for _ in range(n):
        await ledger.increment_usage(account_id, feature)


def _mock_ledger(plan_id: str = "starter", used: int = 0) -> AsyncMock:
    ledger = AsyncMock(spec=UsageLedger)
    ledger.get_plan_id.return_value = plan_id
    ledger.get_usage.return_value = used
    return ledger


# ---------------------------------------------------------------------------
# Tests: admit / deny
# ---------------------------------------------------------------------------


class TestDecisions:
    """Tests for the admit/deny comparison."""

    async def test_probe_allows_below_limit(self, engine, starter_account):
        decision = await engine.check_and_maybe_reserve(
            starter_account, FeatureKind.PERSONAS, CheckMode.PROBE
        )

        assert decision.allowed is True
        assert decision.current_usage == 0
        assert decision.limit == 5
        assert decision.current_plan_id == "starter"
        assert decision.next_tier is None
        assert decision.remaining == 5

    async def test_starter_at_persona_limit_denied_with_professional_upgrade(
        self, engine, memory_ledger, starter_account
    ):
        await _consume(memory_ledger, starter_account, FeatureKind.PERSONAS, 5)

        decision = await engine.check_and_maybe_reserve(
            starter_account, FeatureKind.PERSONAS, CheckMode.PROBE
        )

        assert decision.allowed is False
        assert decision.current_usage == 5
        assert decision.limit == 5
        assert decision.current_plan_id == "starter"
        assert decision.next_tier.id == "professional"
        assert decision.upgrade_gap == 20

    async def test_premium_exhausting_campaigns_has_no_next_tier(
        self, engine, memory_ledger, premium_account
    ):
        await _consume(memory_ledger, premium_account, FeatureKind.CAMPAIGNS, 10)

        decision = await engine.check_and_maybe_reserve(
            premium_account, FeatureKind.CAMPAIGNS, CheckMode.RESERVE
        )

        assert decision.allowed is False
        assert decision.next_tier is None
        assert decision.upgrade_gap is None

    @pytest.mark.parametrize(
        "used, expected",
        [(0, True), (4, True), (5, False), (7, False)],
    )
    async def test_allowed_iff_usage_below_limit(self, catalog, used, expected):
        engine = EntitlementEngine(catalog, _mock_ledger("starter", used))

        decision = await engine.check_and_maybe_reserve("acct", FeatureKind.PERSONAS)

        assert decision.allowed is expected

    async def test_zero_limit_feature_always_denied(self, engine, memory_ledger):
        await memory_ledger.create_account("acct-free", "free")

        decision = await engine.check_and_maybe_reserve("acct-free", FeatureKind.CAMPAIGNS)

        assert decision.allowed is False
        assert decision.limit == 0
        assert decision.next_tier.id == "starter"

    async def test_accepts_string_feature_and_mode(self, engine, starter_account):
        decision = await engine.check_and_maybe_reserve(starter_account, "toneAnalyses", "reserve")

        assert decision.allowed is True
        assert decision.feature is FeatureKind.TONE_ANALYSES
        assert decision.current_usage == 1

    async def test_unknown_feature_raises_value_error(self, engine, starter_account):
        with pytest.raises(ValueError):
            await engine.check_and_maybe_reserve(starter_account, "images")

    async def test_unknown_mode_raises_value_error(self, engine, starter_account):
        with pytest.raises(ValueError):
            await engine.check_and_maybe_reserve(starter_account, FeatureKind.PERSONAS, "commit")

    async def test_plan_change_takes_effect_on_next_check(
        self, engine, memory_ledger, starter_account
    ):
        await _consume(memory_ledger, starter_account, FeatureKind.PERSONAS, 5)
        await memory_ledger.set_plan(starter_account, "professional")

        decision = await engine.check_and_maybe_reserve(starter_account, FeatureKind.PERSONAS)

        assert decision.allowed is True
        assert decision.limit == 25


# ---------------------------------------------------------------------------
# Tests: probe / reserve side effects
# ---------------------------------------------------------------------------


class TestReservations:
    """Tests for ledger side effects of probe and reserve."""

    async def test_probe_never_mutates_usage(self, engine, memory_ledger, starter_account):
        await _consume(memory_ledger, starter_account, FeatureKind.CONTENT_GENERATION, 3)

        for _ in range(5):
            await engine.check_and_maybe_reserve(
                starter_account, FeatureKind.CONTENT_GENERATION, CheckMode.PROBE
            )

        assert await memory_ledger.get_usage(starter_account, FeatureKind.CONTENT_GENERATION) == 3

    async def test_probe_at_limit_never_mutates_usage(self, catalog):
        ledger = _mock_ledger("starter", used=5)
        engine = EntitlementEngine(catalog, ledger)

        await engine.check_and_maybe_reserve("acct", FeatureKind.PERSONAS, CheckMode.PROBE)

        ledger.increment_usage.assert_not_called()

    async def test_reserve_increments_once(self, engine, memory_ledger, starter_account):
        decision = await engine.check_and_maybe_reserve(
            starter_account, FeatureKind.CAMPAIGNS, CheckMode.RESERVE
        )

        assert decision.allowed is True
        assert decision.current_usage == 1
        assert await memory_ledger.get_usage(starter_account, FeatureKind.CAMPAIGNS) == 1

    async def test_reserve_passes_limit_as_ceiling(self, catalog):
        ledger = _mock_ledger("starter", used=1)
        ledger.increment_usage.return_value = 2
        engine = EntitlementEngine(catalog, ledger)

        await engine.check_and_maybe_reserve("acct", FeatureKind.CAMPAIGNS, CheckMode.RESERVE)

        ledger.increment_usage.assert_awaited_once_with("acct", FeatureKind.CAMPAIGNS, ceiling=2)

    async def test_limit_n_permits_exactly_n_reservations(
        self, engine, memory_ledger, starter_account
    ):
        results = [
            await engine.check_and_maybe_reserve(
                starter_account, FeatureKind.PERSONAS, CheckMode.RESERVE
            )
            for _ in range(8)
        ]

        assert [r.allowed for r in results] == [True] * 5 + [False] * 3
        assert await memory_ledger.get_usage(starter_account, FeatureKind.PERSONAS) == 5

    async def test_denied_reserve_does_not_increment(self, catalog):
        ledger = _mock_ledger("starter", used=2)
        engine = EntitlementEngine(catalog, ledger)

        decision = await engine.check_and_maybe_reserve(
            "acct", FeatureKind.CAMPAIGNS, CheckMode.RESERVE
        )

        assert decision.allowed is False
        ledger.increment_usage.assert_not_called()

    async def test_lost_race_returns_denial_with_fresh_usage(self, catalog):
        ledger = _mock_ledger("starter")
        ledger.get_usage.side_effect = [1, 2]
        ledger.increment_usage.return_value = None
        engine = EntitlementEngine(catalog, ledger)

        decision = await engine.check_and_maybe_reserve(
            "acct", FeatureKind.CAMPAIGNS, CheckMode.RESERVE
        )

        assert decision.allowed is False
        assert decision.current_usage == 2
        assert decision.next_tier.id == "professional"


class TestConcurrency:
    """Tests for concurrent reservations on one account/feature."""

    async def test_two_reservations_at_last_unit_admit_exactly_one(
        self, engine, memory_ledger, starter_account
    ):
        await _consume(memory_ledger, starter_account, FeatureKind.PERSONAS, 4)

        results = await asyncio.gather(
            engine.check_and_maybe_reserve(starter_account, FeatureKind.PERSONAS, CheckMode.RESERVE),
            engine.check_and_maybe_reserve(starter_account, FeatureKind.PERSONAS, CheckMode.RESERVE),
        )

        assert sorted(r.allowed for r in results) == [False, True]
        assert await memory_ledger.get_usage(starter_account, FeatureKind.PERSONAS) == 5

    async def test_concurrent_reservations_counted_exactly(
        self, catalog, memory_ledger, starter_account
    ):
        await memory_ledger.set_plan(starter_account, "premium")
        engine = EntitlementEngine(catalog, memory_ledger)

        results = await asyncio.gather(
            *[
                engine.check_and_maybe_reserve(
                    starter_account, FeatureKind.CONTENT_GENERATION, CheckMode.RESERVE
                )
                for _ in range(40)
            ]
        )

        assert all(r.allowed for r in results)
        assert await memory_ledger.get_usage(starter_account, FeatureKind.CONTENT_GENERATION) == 40

    async def test_concurrent_burst_never_exceeds_limit(self, engine, memory_ledger, starter_account):
        results = await asyncio.gather(
            *[
                engine.check_and_maybe_reserve(
                    starter_account, FeatureKind.CONTENT_GENERATION, CheckMode.RESERVE
                )
                for _ in range(25)
            ]
        )

        assert sum(r.allowed for r in results) == 10
        assert await memory_ledger.get_usage(starter_account, FeatureKind.CONTENT_GENERATION) == 10


# ---------------------------------------------------------------------------
# Tests: errors are raised, never returned as denials
# ---------------------------------------------------------------------------


class TestErrors:
    """Tests for engine error propagation."""

    async def test_unknown_account_raises(self, engine):
        with pytest.raises(AccountNotFound) as exc_info:
            await engine.check_and_maybe_reserve("missing", FeatureKind.PERSONAS)

        assert exc_info.value.account_id == "missing"
        assert exc_info.value.feature is FeatureKind.PERSONAS

    async def test_stale_plan_id_raises_unknown_plan(self, engine, memory_ledger):
        await memory_ledger.create_account("acct-legacy", "enterprise")

        with pytest.raises(UnknownPlan) as exc_info:
            await engine.check_and_maybe_reserve("acct-legacy", FeatureKind.CAMPAIGNS)

        assert exc_info.value.plan_id == "enterprise"
        assert exc_info.value.account_id == "acct-legacy"

    async def test_ledger_failure_propagates_without_retry(self, catalog):
        ledger = _mock_ledger("starter")
        ledger.get_usage.side_effect = LedgerUnavailable("Usage ledger could not read usage")
        engine = EntitlementEngine(catalog, ledger)

        with pytest.raises(LedgerUnavailable):
            await engine.check_and_maybe_reserve("acct", FeatureKind.PERSONAS, CheckMode.RESERVE)

        assert ledger.get_usage.await_count == 1
        ledger.increment_usage.assert_not_called()

    async def test_increment_failure_propagates(self, catalog):
        ledger = _mock_ledger("starter", used=0)
        ledger.increment_usage.side_effect = LedgerUnavailable("down", account_id="acct")
        engine = EntitlementEngine(catalog, ledger)

        with pytest.raises(LedgerUnavailable) as exc_info:
            await engine.check_and_maybe_reserve("acct", FeatureKind.PERSONAS, CheckMode.RESERVE)

        assert exc_info.value.feature is FeatureKind.PERSONAS

    async def test_errors_logged_with_account_and_feature(self, engine, caplog):
        with pytest.raises(AccountNotFound):
            await engine.check_and_maybe_reserve("missing", FeatureKind.CAMPAIGNS)

        record = next(r for r in caplog.records if r.levelname == "ERROR")
        assert record.account_id == "missing"
        assert record.feature == "campaigns"


# ---------------------------------------------------------------------------
# Tests: usage overview
# ---------------------------------------------------------------------------


class TestUsageOverview:
    """Tests for the per-feature usage overview."""

    async def test_overview_lists_every_feature(self, engine, memory_ledger, starter_account):
        await _consume(memory_ledger, starter_account, FeatureKind.PERSONAS, 5)
        await _consume(memory_ledger, starter_account, FeatureKind.CONTENT_GENERATION, 9)
        await _consume(memory_ledger, starter_account, FeatureKind.TONE_ANALYSES, 4)

        overview = {item.feature: item for item in (await engine.usage_overview(starter_account)).features}

        assert list(overview) == list(FeatureKind)
        assert overview[FeatureKind.PERSONAS].status is UsageStatus.AT_LIMIT
        assert overview[FeatureKind.CONTENT_GENERATION].percentage == 90
        assert overview[FeatureKind.CONTENT_GENERATION].status is UsageStatus.ALMOST_AT_LIMIT
        assert overview[FeatureKind.TONE_ANALYSES].status is UsageStatus.HIGH
        assert overview[FeatureKind.CAMPAIGNS].status is UsageStatus.GOOD
        assert overview[FeatureKind.CAMPAIGNS].label == "Campaigns"

    async def test_zero_limit_reads_as_full(self, engine, memory_ledger):
        await memory_ledger.create_account("acct-free", "free")

        overview = {item.feature: item for item in (await engine.usage_overview("acct-free")).features}

        assert overview[FeatureKind.CAMPAIGNS].percentage == 100
        assert overview[FeatureKind.CAMPAIGNS].status is UsageStatus.AT_LIMIT

    async def test_overview_unknown_plan_raises(self, engine, memory_ledger):
        await memory_ledger.create_account("acct-legacy", "enterprise")

        with pytest.raises(UnknownPlan) as exc_info:
            await engine.usage_overview("acct-legacy")

        assert exc_info.value.account_id == "acct-legacy"

    async def test_overview_tier_and_counters_share_one_snapshot(self, catalog):
        ledger = _mock_ledger("starter")
        ledger.get_account_usage.return_value = AccountUsage(
            account_id="acct",
            plan_id="professional",
            counters={FeatureKind.PERSONAS: 20},
        )
        engine = EntitlementEngine(catalog, ledger)

        overview = await engine.usage_overview("acct")

        assert overview.tier.id == "professional"
        personas = overview.features[0]
        assert personas.limit == overview.tier.limits[FeatureKind.PERSONAS] == 25
        assert personas.status is UsageStatus.HIGH
        ledger.get_account_usage.assert_awaited_once_with("acct")
        ledger.get_plan_id.assert_not_called()


# ---------------------------------------------------------------------------
# Tests: concurrency over the database ledger
# ---------------------------------------------------------------------------


@pytest.fixture
async def file_db_ledger(tmp_path):
    """Database ledger on a file-backed SQLite database with a real connection pool."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    yield DatabaseUsageLedger(session_maker)

    await db_engine.dispose()


class TestDatabaseConcurrency:
    """Concurrent reservations resolved by the conditional UPDATE."""

    async def test_two_reservations_at_last_unit_admit_exactly_one(self, catalog, file_db_ledger):
        engine = EntitlementEngine(catalog, file_db_ledger)
        await file_db_ledger.create_account("acct-db", "starter")
        for _ in range(4):
            await file_db_ledger.increment_usage("acct-db", FeatureKind.PERSONAS)

        results = await asyncio.gather(
            engine.check_and_maybe_reserve("acct-db", FeatureKind.PERSONAS, CheckMode.RESERVE),
            engine.check_and_maybe_reserve("acct-db", FeatureKind.PERSONAS, CheckMode.RESERVE),
        )

        assert sorted(r.allowed for r in results) == [False, True]
        assert await file_db_ledger.get_usage("acct-db", FeatureKind.PERSONAS) == 5

    async def test_burst_larger_than_limit_admits_exactly_limit(self, catalog, file_db_ledger):
        engine = EntitlementEngine(catalog, file_db_ledger)
        await file_db_ledger.create_account("acct-db", "starter")

        results = await asyncio.gather(
            *[
                engine.check_and_maybe_reserve(
                    "acct-db", FeatureKind.CONTENT_GENERATION, CheckMode.RESERVE
                )
                for _ in range(25)
            ]
        )

        assert sum(r.allowed for r in results) == 10
        assert sorted(r.current_usage for r in results if r.allowed) == list(range(1, 11))
        assert await file_db_ledger.get_usage("acct-db", FeatureKind.CONTENT_GENERATION) == 10
