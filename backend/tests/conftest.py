# Shared pytest configuration and fixtures for all test types
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from api.main import app
from common.db.base import Base
from common.providers.caching.memory_cache import MemoryCache
from common.providers.messaging.event_publisher import EventPublisher
import packages.billing.models.database  # noqa: F401
from packages.billing.models.domain.enums import BillingInterval
from packages.billing.models.domain.plans import SubscriptionPlanCreateModel
from packages.billing.routes.webhooks import get_payment_gateway
from packages.billing.services.credit_service import CreditLedgerService
from packages.billing.services.payment_service import PaymentGatewayService
from packages.billing.services.plans_service import PlanService
from packages.billing.services.scheduler_service import SchedulerService
from packages.billing.services.subscription_service import SubscriptionService
from tests.fixtures import TENANT_ID

# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine and initialize schema."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_connection(test_engine):
    """Create test connection with outer transaction for rollback isolation."""
    async with test_engine.connect() as connection:
        trans = await connection.begin()
        yield connection
        await trans.rollback()


@pytest_asyncio.fixture(scope="function")
async def test_session_factory(test_connection):
    """Create session factory bound to test connection.

    Using join_transaction_mode="create_savepoint" so nested transaction()
    calls create savepoints instead of real nested transactions.
    """
    return async_sessionmaker(
        bind=test_connection,
        class_=AsyncSession,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )


@pytest_asyncio.fixture(scope="function")
async def test_db(test_session_factory):
    """Create a test database session."""
    async with test_session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function", autouse=True)
async def patch_lazy_sessions(test_session_factory, monkeypatch):
    """
    Patch session factories to use test database.

    This allows real transaction() and get_session() to run with proper
    commit/rollback/ContextVar semantics while using the test database.
    """
    monkeypatch.setattr("common.db.scoped.AsyncSessionLocal", test_session_factory)
    monkeypatch.setattr(
        "common.db.scoped.AsyncSessionLocalReadonly", test_session_factory
    )


@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    """Fresh in-process cache for every test."""
    cache = MemoryCache()
    monkeypatch.setattr("common.providers.caching.factory._cache_provider", cache)
    return cache


class FrozenClock:
    """Controllable stand-in for common.core.clock.utcnow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def frozen_clock(monkeypatch):
    """Freeze billing time; tests move it with ``advance``."""
    clock = FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))
    monkeypatch.setattr("common.core.clock.utcnow", clock)
    return clock


@pytest.fixture
def mock_message_queue():
    """Create a mock message queue instance for testing."""
    queue = AsyncMock()
    queue.declare_exchange = AsyncMock(return_value=True)
    queue.publish = AsyncMock(return_value=True)
    queue.connect = AsyncMock(return_value=True)
    queue.disconnect = AsyncMock(return_value=None)
    return queue


@pytest.fixture
def event_publisher(mock_message_queue):
    return EventPublisher(message_queue=mock_message_queue, exchange="billing.events")


@pytest.fixture
def scheduler():
    return SchedulerService()


@pytest.fixture
def payment_gateway(event_publisher, scheduler):
    return PaymentGatewayService(event_publisher=event_publisher, scheduler=scheduler)


@pytest.fixture
def ledger(payment_gateway, event_publisher, scheduler):
    return CreditLedgerService(
        payment_gateway=payment_gateway,
        event_publisher=event_publisher,
        scheduler=scheduler,
    )


@pytest.fixture
def plan_service():
    return PlanService()


@pytest.fixture
def subscription_service(ledger, plan_service, event_publisher, scheduler):
    return SubscriptionService(
        ledger=ledger,
        plan_service=plan_service,
        event_publisher=event_publisher,
        scheduler=scheduler,
    )


@pytest_asyncio.fixture
async def default_plans(plan_service):
    """Seed the default plan catalog."""
    return await plan_service.ensure_default_plans()


@pytest_asyncio.fixture
async def trial_plan(plan_service):
    return await plan_service.create_plan(
        SubscriptionPlanCreateModel(
            id="trial-basic",
            name="Trial Basic",
            price=Decimal("20.00"),
            interval=BillingInterval.MONTHLY,
            credits_included=Decimal("100"),
            trial_days=14,
        )
    )


@pytest.fixture
def fund_tenant(ledger):
    """Grant credits to a tenant directly on the ledger."""

    async def _fund(amount, tenant_id: str = TENANT_ID):
        return await ledger.grant_credits(tenant_id, amount, description="Test funding")

    return _fund


@pytest_asyncio.fixture(scope="function")
async def client(payment_gateway, ledger):
    """Create a test client wired to the test services."""
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway

    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
