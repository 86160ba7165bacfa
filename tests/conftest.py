"""
Shared pytest fixtures for testing the tokenization engine.

Uses an in-memory SQLite database for fast, isolated tests, and a
recording stand-in for the settlement collaborator.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tokenengine.database import (
    Base,
    enable_sqlite_foreign_keys,
    get_session,
    get_session_factory,
    utcnow,
)
from tokenengine.errors import SettlementSubmissionError
from tokenengine.main import app
from tokenengine.schemas.asset import AssetCreate
from tokenengine.services import ledger, lifecycle, trading
from tokenengine.settlement import SettlementGateway, get_settlement_gateway


# Use in-memory SQLite for tests (fast, isolated)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

STAGES = ["draft", "pending_approval", "approved", "issuing", "sale_active", "sale_ended", "active"]


class RecordingGateway(SettlementGateway):
    """Settlement stand-in that records intents and can refuse the next N."""

    def __init__(self):
        self.issuances: list[tuple[str, int, str]] = []
        self.payouts: list[tuple[str, str, Decimal, str]] = []
        self.fail_next = 0

    def _maybe_fail(self, idempotency_key: str) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise SettlementSubmissionError(
                f"Could not submit settlement intent {idempotency_key}: connection refused",
                detail={"idempotency_key": idempotency_key},
            )

    async def request_issuance(self, asset_id, total_supply, idempotency_key):
        self._maybe_fail(idempotency_key)
        self.issuances.append((asset_id, total_supply, idempotency_key))

    async def request_payout(self, payout_line_id, holder_id, amount, idempotency_key):
        self._maybe_fail(idempotency_key)
        self.payouts.append((payout_line_id, holder_id, amount, idempotency_key))


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio backend for pytest-asyncio."""
    return "asyncio"


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine.

    Creates tables at the start, drops them at the end.
    Each test gets a fresh database.
    """
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test database (for the scheduler)."""
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a file-backed database, each with its own connection.

    Used by tests that race several sessions against each other.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"timeout": 30},
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_session(session_factory):
    """Provide a database session for a test.

    Rolls back the session after each test for isolation.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest_asyncio.fixture
async def test_client(session_factory, gateway):
    """Provide a FastAPI test client with test database and gateway.

    Overrides the session, session factory and settlement dependencies.
    """

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settlement_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


# --- Helper fixtures for creating test data ---

def asset_data(**overrides) -> AssetCreate:
    """Complete asset metadata with a sale window that is already open."""
    now = utcnow()
    fields = {
        "property_id": "prop-001",
        "name": "Harbor View Apartments",
        "symbol": "hva",
        "total_supply": 1000,
        "unit_price": Decimal("10.00"),
        "expected_yield_pct": Decimal("6.50"),
        "sale_start": now - timedelta(days=1),
        "sale_end": now + timedelta(days=30),
    }
    fields.update(overrides)
    return AssetCreate(**fields)


@pytest_asyncio.fixture
async def make_asset(test_session, gateway):
    """Factory that walks a new asset through the lifecycle up to `stage`.

    `holders` maps holder ids to units bought in the primary sale
    (needed for stages from sale_ended on).
    """

    async def make(stage="draft", holders=None, **overrides):
        session = test_session
        target = STAGES.index(stage)

        asset = await lifecycle.create_tokenized_asset(session, asset_data(**overrides))
        if target == 0:
            return asset
        asset = await lifecycle.submit_for_approval(session, asset.id, asset.version)
        if target == 1:
            return asset
        asset = await lifecycle.approve(session, asset.id, asset.version, "reviewer-1")
        if target == 2:
            return asset
        asset = await lifecycle.request_issuance(session, asset.id, asset.version, gateway)
        if target == 3:
            return asset
        asset = await lifecycle.record_issuance_result(session, asset.issuance_key, True)
        for holder_id, units in (holders or {}).items():
            await trading.purchase_primary(
                session, asset.id, holder_id, units, asset.unit_price
            )
        asset = await ledger.require_asset(session, asset.id)
        if target == 4:
            return asset
        asset = await lifecycle.close_sale_window(session, asset.id, asset.version)
        if target == 5:
            return asset
        asset, _ = await lifecycle.confirm_go_live(session, asset.id, asset.version)
        return asset

    return make
