"""
Test Fixtures
=============

Shared fixtures for the test suite:
- In-memory SQLite database (aiosqlite) with SAVEPOINT support
- A seeded app with an iOS/Android catalog
- An API client with store adapters and Redis swapped out
"""

from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import get_db
from app.main import app as fastapi_app
from app.models import App, Entitlement, Platform, Product, ProductEntitlement, ProductType
from app.stores import AppleStoreAdapter, GooglePlayAdapter, StoreAdapterFactory, get_store_factory
from factories import (
    ANDROID_MONTHLY,
    BUNDLE_ID,
    IOS_LIFETIME,
    IOS_MONTHLY,
    PACKAGE_NAME,
    PUBLIC_KEY,
    SECRET_KEY,
    AppleSigner,
)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class FakeStoreFactory(StoreAdapterFactory):
    """Hands out the same pre-built adapters for every app."""

    def __init__(self, apple: AppleStoreAdapter, google: GooglePlayAdapter):
        self.apple_adapter = apple
        self.google_adapter = google

    def apple(self, app=None, sandbox: bool = False) -> AppleStoreAdapter:
        return self.apple_adapter

    def google(self, app) -> GooglePlayAdapter:
        return self.google_adapter


@pytest.fixture(scope="session")
def apple_signer() -> AppleSigner:
    return AppleSigner()


@pytest.fixture
def stores(apple_signer: AppleSigner) -> FakeStoreFactory:
    """
    Real adapters that never leave the process.

    Apple trusts the test root and has no API credentials; tests set
    ``stores.google_adapter.fetch_subscription`` to what Google returns.
    """
    google = GooglePlayAdapter(package_name=PACKAGE_NAME, service_account_json="{}")
    google.fetch_subscription = AsyncMock(side_effect=AssertionError("unexpected Google call"))
    return FakeStoreFactory(
        apple=AppleStoreAdapter(bundle_id=BUNDLE_ID, root_certificates=[apple_signer.root]),
        google=google,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Session for arranging and asserting.

    Requests share the single in-memory connection, so commit before
    calling the API and read results back with a fresh session.
    """
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(db: AsyncSession) -> dict[str, Any]:
    """One app selling a monthly subscription on both stores and an iOS lifetime unlock."""
    iap_app = App(
        name="Reader",
        bundle_id=BUNDLE_ID,
        package_name=PACKAGE_NAME,
        public_key=PUBLIC_KEY,
        secret_key=SECRET_KEY,
        webhook_secret="whsec_test",
    )
    db.add(iap_app)
    await db.flush()

    pro = Entitlement(app_id=iap_app.id, identifier="pro", display_name="Pro")
    ios_monthly = Product(
        app_id=iap_app.id,
        identifier="pro_monthly",
        store_product_id=IOS_MONTHLY,
        platform=Platform.IOS,
        type=ProductType.AUTO_RENEWABLE_SUBSCRIPTION,
    )
    android_monthly = Product(
        app_id=iap_app.id,
        identifier="pro_monthly",
        store_product_id=ANDROID_MONTHLY,
        platform=Platform.ANDROID,
        type=ProductType.AUTO_RENEWABLE_SUBSCRIPTION,
    )
    lifetime = Product(
        app_id=iap_app.id,
        identifier="lifetime",
        store_product_id=IOS_LIFETIME,
        platform=Platform.IOS,
        type=ProductType.NON_CONSUMABLE,
    )
    db.add_all([pro, ios_monthly, android_monthly, lifetime])
    await db.flush()

    db.add_all(
        [
            ProductEntitlement(product_id=product.id, entitlement_id=pro.id)
            for product in (ios_monthly, android_monthly, lifetime)
        ]
    )
    await db.commit()

    return {
        "app": iap_app,
        "pro": pro,
        "ios_monthly": ios_monthly,
        "android_monthly": android_monthly,
        "lifetime": lifetime,
    }


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, stores) -> AsyncGenerator[AsyncClient, None]:
    """API client on the test database; Redis is down so cache and rate limits fail open."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    redis_down = AsyncMock(side_effect=ConnectionError("Redis unavailable"))

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_store_factory] = lambda: stores

    with patch("app.services.cache.get_redis", redis_down), \
            patch("app.core.rate_limit.get_redis", redis_down), \
            patch("app.api.v1.webhooks.get_session_factory", return_value=session_factory):
        transport = ASGITransport(app=fastapi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def public_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {PUBLIC_KEY}"}


@pytest.fixture
def secret_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SECRET_KEY}"}
