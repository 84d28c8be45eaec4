"""
Test infrastructure for the e-commerce services.

Strategy
--------
- SQLite in-memory via aiosqlite stands in for Postgres.  StaticPool keeps
  every task on the same connection, because an in-memory SQLite database
  only exists for the connection that created it.
- ``get_db`` is overridden on the product and user apps so requests use the
  test session factory.  Tables are created before each test and dropped
  after it.
- ASGITransport does not run the lifespan, so each client fixture builds a
  ``ServiceRuntime`` on the in-memory bus and registry, starts it and puts it
  on ``app.state`` the way the lifespan would.  All services in one test
  share the ``bus`` fixture, which lets tests observe published events.
- The product cache is disabled (``cache._redis = None``).  The cart store
  gets an in-process double holding the subset of the Redis API it calls.
"""
from contextlib import asynccontextmanager
from typing import Iterable

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ecommerce.cache import cache
from ecommerce.carts.consumers import cart_subscriptions
from ecommerce.carts.main import app as carts_app
from ecommerce.carts.service import cart_store
from ecommerce.database import Base, get_db
from ecommerce.messaging import InMemoryMessageBus, Subscription
from ecommerce.products.main import app as products_app
from ecommerce.users.main import app as users_app
from tests.support import RedisDouble, build_test_runtime

# ---------------------------------------------------------------------------
# Test database engine - SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)

async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

products_app.dependency_overrides[get_db] = override_get_db
users_app.dependency_overrides[get_db] = override_get_db

# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------

@asynccontextmanager
async def serve(app, service_name: str, bus: InMemoryMessageBus, subscriptions: Iterable[Subscription] = ()):
    runtime = app.state.runtime = build_test_runtime(service_name, bus)
    await runtime.start(subscriptions)
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        await runtime.stop()
        del app.state.runtime

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    async with async_session_test() as session:
        yield session

@pytest_asyncio.fixture
async def bus() -> InMemoryMessageBus:
    bus = InMemoryMessageBus()
    await bus.connect()
    yield bus
    await bus.shutdown()

@pytest_asyncio.fixture
async def redis_double() -> RedisDouble:
    double = RedisDouble()
    cart_store._redis = double
    yield double
    cart_store._redis = None

@pytest_asyncio.fixture
async def product_client(bus) -> AsyncClient:
    cache._redis = None
    async with serve(products_app, "product-service", bus) as client:
        yield client

@pytest_asyncio.fixture
async def user_client(bus) -> AsyncClient:
    async with serve(users_app, "user-service", bus) as client:
        yield client

@pytest_asyncio.fixture
async def cart_client(bus, redis_double) -> AsyncClient:
    async with serve(carts_app, "cart-service", bus, cart_subscriptions(cart_store)) as client:
        yield client
