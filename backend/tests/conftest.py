"""
Pytest configuration and shared fixtures for backend tests.
"""

import os
import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Keep tests off real infrastructure; must be set before settings are first loaded
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("USAGE_LEDGER_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from typing import AsyncGenerator

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import after path is set
from core.plans import PLANS, PlanCatalog
from infrastructure.database.models import Base
from services.entitlements import EntitlementEngine
from services.usage_ledger import DatabaseUsageLedger, InMemoryUsageLedger

# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def catalog() -> PlanCatalog:
    """Plan catalog built from the production PLANS table."""
    return PlanCatalog.from_config(PLANS)


@pytest.fixture
def memory_ledger() -> InMemoryUsageLedger:
    """Fresh in-memory usage ledger."""
    return InMemoryUsageLedger()


@pytest.fixture
def engine(catalog: PlanCatalog, memory_ledger: InMemoryUsageLedger) -> EntitlementEngine:
    """Entitlement engine over the in-memory ledger."""
    return EntitlementEngine(catalog=catalog, ledger=memory_ledger)


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def db_ledger(session_maker) -> DatabaseUsageLedger:
    """Usage ledger over the test database."""
    return DatabaseUsageLedger(session_maker)


@pytest.fixture
async def async_client(
    catalog: PlanCatalog,
    memory_ledger: InMemoryUsageLedger,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here to avoid circular imports
    from api.dependencies import get_plan_catalog, get_usage_ledger
    from main import app

    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_usage_ledger] = lambda: memory_ledger

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Account Fixtures
# ============================================================================

@pytest.fixture
async def starter_account(memory_ledger: InMemoryUsageLedger) -> str:
    """
    Create a starter-tier account with no usage.

    Starter limits: 5 personas, 5 tone analyses, 10 content generations,
    2 campaigns.
    """
    await memory_ledger.create_account("acct-starter", "starter")
    return "acct-starter"


@pytest.fixture
async def premium_account(memory_ledger: InMemoryUsageLedger) -> str:
    """Create a premium-tier account (highest price) with no usage."""
    await memory_ledger.create_account("acct-premium", "premium")
    return "acct-premium"
