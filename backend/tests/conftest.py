"""
Test Configuration — Fixtures for an async in-memory DB and seeded tenants.

Every test gets a fresh in-memory SQLite database. StaticPool keeps a single
connection so all sessions opened by the repositories see the same data.
"""

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401  (registers tables on Base.metadata)
from core.security import TokenCipher
from db.interfaces import StockSnapshotInput
from db.models import Threshold, User
from db.repositories import (
    SqlAlertRepository,
    SqlDailyConsumptionRepository,
    SqlStockSnapshotRepository,
    SqlTenantRepository,
    SqlThresholdRepository,
    SqlUserRepository,
)
from db.session import Base, build_sessionmaker

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ACCESS_TOKEN = "bsale-test-token"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(test_engine):
    return build_sessionmaker(test_engine)


@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key().decode())


# ── Repositories ───────────────────────────────────────────────────────────


@pytest.fixture
def tenant_repo(sessions, cipher):
    return SqlTenantRepository(sessions, cipher)


@pytest.fixture
def user_repo(sessions):
    return SqlUserRepository(sessions)


@pytest.fixture
def snapshot_repo(sessions):
    return SqlStockSnapshotRepository(sessions)


@pytest.fixture
def consumption_repo(sessions):
    return SqlDailyConsumptionRepository(sessions)


@pytest.fixture
def threshold_repo(sessions):
    return SqlThresholdRepository(sessions)


@pytest.fixture
def alert_repo(sessions):
    return SqlAlertRepository(sessions)


# ── Seed data ──────────────────────────────────────────────────────────────


@pytest.fixture
async def tenant(tenant_repo):
    return await tenant_repo.create("acme-cl", "Acme Chile", ACCESS_TOKEN)


@pytest.fixture
def add_user(sessions, tenant):
    async def _add(**overrides) -> User:
        values = {"tenant_id": tenant.id, "email": f"{uuid.uuid4().hex[:8]}@acme.cl"}
        values.update(overrides)
        async with sessions() as db:
            user = User(**values)
            db.add(user)
            await db.commit()
            return user

    return _add


@pytest.fixture
async def user(add_user):
    return await add_user(email="owner@acme.cl", name="Owner")


@pytest.fixture
def add_threshold(sessions):
    async def _add(user: User, **overrides) -> Threshold:
        values = {"tenant_id": user.tenant_id, "user_id": user.id}
        values.update(overrides)
        async with sessions() as db:
            threshold = Threshold(**values)
            db.add(threshold)
            await db.commit()
            return threshold

    return _add


@pytest.fixture
def add_snapshot(snapshot_repo, tenant):
    async def _add(variant_id: int, available: float, *, days_ago: int = 0, office_id: int | None = None, **extra):
        await snapshot_repo.upsert_batch(
            [
                StockSnapshotInput(
                    tenant_id=tenant.id,
                    bsale_variant_id=variant_id,
                    bsale_office_id=office_id,
                    quantity=available,
                    quantity_reserved=0,
                    quantity_available=available,
                    snapshot_date=utc_today() - timedelta(days=days_ago),
                    **extra,
                )
            ]
        )

    return _add
