"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from quotaflow.api.main import create_app
from quotaflow.billing.archive import QuotaArchive
from quotaflow.billing.catalog import PlanCatalog
from quotaflow.billing.event_ledger import BillingEventLedger
from quotaflow.billing.models import Tier
from quotaflow.billing.quota_manager import QuotaLedger
from quotaflow.billing.reconciler import LifecycleReconciler
from quotaflow.billing.tier_features import DEFAULT_TIERS
from quotaflow.core.config import Settings, get_settings
from quotaflow.core.database import Database
from quotaflow.models.user import User

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PRODUCT_REFS = {
    tier["slug"]: tier["external_product_ref"] for tier in DEFAULT_TIERS
}


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to a Wednesday afternoon (ISO week 2 of 2026)."""
    return FixedClock(datetime(2026, 1, 7, 15, 30, tzinfo=UTC))


@pytest.fixture
def settings() -> Settings:
    """Settings for an in-memory database and a generous ingress gate."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        default_tier_id="starter",
        webhook_rate_limit_per_minute=6000,
        webhook_rate_limit_burst=1000,
        cron_secret=None,
    )


@pytest_asyncio.fixture(scope="function")
async def database() -> AsyncGenerator[Database, None]:
    """Connected in-memory database with all tables created."""
    db = Database(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    db.connect()
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with database.session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def catalog(db_session: AsyncSession) -> PlanCatalog:
    """Plan catalog seeded with the default tiers."""
    plan_catalog = PlanCatalog(db_session)
    await plan_catalog.seed_tiers()
    await db_session.commit()
    return plan_catalog


@pytest_asyncio.fixture(scope="function")
async def tiers(catalog: PlanCatalog) -> dict[str, Tier]:
    return {tier.slug: tier for tier in await catalog.list_tiers()}


@pytest.fixture
def ledger(db_session: AsyncSession, catalog: PlanCatalog, clock: FixedClock) -> QuotaLedger:
    return QuotaLedger(
        db_session,
        default_tier_id="starter",
        catalog=catalog,
        clock=clock,
    )


@pytest.fixture
def archive(db_session: AsyncSession, clock: FixedClock) -> QuotaArchive:
    return QuotaArchive(db_session, clock=clock)


@pytest.fixture
def event_ledger(db_session: AsyncSession, clock: FixedClock) -> BillingEventLedger:
    return BillingEventLedger(db_session, clock=clock)


@pytest.fixture
def reconciler(
    db_session: AsyncSession,
    catalog: PlanCatalog,
    ledger: QuotaLedger,
    archive: QuotaArchive,
    clock: FixedClock,
) -> LifecycleReconciler:
    return LifecycleReconciler(
        db_session,
        default_tier_id="starter",
        catalog=catalog,
        ledger=ledger,
        archive=archive,
        clock=clock,
    )


async def create_user(
    db_session: AsyncSession,
    user_id: str,
    *,
    email: str | None = None,
    tier_id: str = "starter",
    external_customer_id: str | None = None,
) -> User:
    """Insert a user and commit."""
    user = User(
        id=user_id,
        email=email or f"{user_id}@example.com",
        tier_id=tier_id,
        external_customer_id=external_customer_id,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def product_refs() -> dict[str, str]:
    """Payment-provider product ids of the bundled tiers, by tier slug."""
    return dict(PRODUCT_REFS)


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory inserting committed users."""

    async def _make_user(user_id: str, **kwargs: Any) -> User:
        return await create_user(db_session, user_id, **kwargs)

    return _make_user


@pytest_asyncio.fixture(scope="function")
async def starter_user(db_session: AsyncSession, catalog: PlanCatalog) -> User:
    """A user on the starter tier."""
    return await create_user(
        db_session,
        "user-starter",
        email="starter@example.com",
        external_customer_id="cus_starter",
    )


@pytest_asyncio.fixture(scope="function")
async def pro_user(db_session: AsyncSession, catalog: PlanCatalog) -> User:
    """A user on the pro tier with a live quota record."""
    user = await create_user(
        db_session,
        "user-pro",
        email="pro@example.com",
        tier_id="pro",
        external_customer_id="cus_pro",
    )
    ledger = QuotaLedger(db_session, default_tier_id="starter", catalog=catalog)
    await ledger.create_quota_record_from_tier(user.id, "pro")
    await db_session.commit()
    return user


@pytest.fixture
def app(settings: Settings, database: Database) -> FastAPI:
    """Application wired to the test database and settings."""
    application = create_app(settings, database=database)
    application.dependency_overrides[get_settings] = lambda: settings
    return application


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI, catalog: PlanCatalog) -> AsyncGenerator[AsyncClient, None]:
    """Create test client over the ASGI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
