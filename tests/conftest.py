import os
# Settings are read at import time: point everything at SQLite BEFORE any app imports
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all models are registered in the metadata before create_all
from app.shared.db.base import Base
from app.models.dimensions import (  # noqa: F401
    CloudAccount, Service, Region, Sku, Resource, SubAccount, CommitmentDiscount,
)
from app.models.billing import BillingUpload, BillingUsageFact  # noqa: F401


@pytest.fixture
async def engine():
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
async def ac(session_maker) -> AsyncGenerator[AsyncClient, None]:
    """Async client fixture for testing API endpoints against the test database."""
    from app.main import app
    from app.shared.db.session import get_db

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def billing_row(service: str, cost, day: str = "2026-01-02", **extra) -> dict:
    """One raw row in the ingestion input contract."""
    row = {
        "provider": "aws",
        "billing_account_id": "111122223333",
        "billing_account_name": "Production",
        "service_name": service,
        "region_code": "us-east-1",
        "charge_category": "Usage",
        "billed_cost": cost,
        "effective_cost": cost,
        "charge_period_start": day,
        "charge_period_end": day,
    }
    row.update(extra)
    return row


@pytest.fixture
def scenario_rows():
    """Three lines for one upload: Compute 100 + 50, Storage 50."""
    return [
        billing_row("Compute", "100", day="2026-01-01"),
        billing_row("Compute", "50", day="2026-01-02"),
        billing_row("Storage", "50", day="2026-01-03"),
    ]
