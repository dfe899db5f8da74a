import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from common.db.base import Base
from common.db.context import (
    _force_readonly,
    get_current_session,
    in_transaction,
    is_readonly_forced,
)
from common.db.scoped import get_session, transaction
from packages.billing.models.database.plan import SubscriptionPlanEntity

# Own engine: these tests need real commits, not the rollback-wrapped connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def plan_row(plan_id: str, price: str = "10.00") -> SubscriptionPlanEntity:
    return SubscriptionPlanEntity(
        id=plan_id,
        name=plan_id.title(),
        price=Decimal(price),
        interval="monthly",
    )


async def stored_plan_ids(session_factory) -> set:
    async with session_factory() as session:
        result = await session.execute(select(SubscriptionPlanEntity.id))
        return set(result.scalars().all())


@pytest_asyncio.fixture(scope="function")
async def committing_engine():
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def committing_factory(committing_engine, monkeypatch):
    """Route transaction()/get_session() to an engine whose commits stick."""
    factory = async_sessionmaker(
        committing_engine, class_=AsyncSession, expire_on_commit=False
    )
    monkeypatch.setattr("common.db.scoped.AsyncSessionLocal", factory)
    monkeypatch.setattr("common.db.scoped.AsyncSessionLocalReadonly", factory)
    return factory


class TestTransaction:
    async def test_commit_on_exit(self, committing_factory):
        async with transaction() as session:
            session.add(plan_row("starter"))

        assert await stored_plan_ids(committing_factory) == {"starter"}

    async def test_exception_rolls_back(self, committing_factory):
        with pytest.raises(ValueError):
            async with transaction() as session:
                session.add(plan_row("starter"))
                await session.flush()
                raise ValueError("charge failed")

        assert await stored_plan_ids(committing_factory) == set()

    async def test_session_published_to_context(self, committing_factory):
        async with transaction() as session:
            assert get_current_session(readonly=False) is session
            assert in_transaction(readonly=False) is True

        assert get_current_session(readonly=False) is None
        assert in_transaction(readonly=False) is False

    async def test_nested_calls_join_outer_session(self, committing_factory):
        async with transaction() as outer:
            async with transaction() as inner:
                assert inner is outer
                inner.add(plan_row("growth"))
                await inner.flush()

            # Inner exit leaves the row pending on the outer session
            row = await outer.get(SubscriptionPlanEntity, "growth")
            assert row is not None

        assert await stored_plan_ids(committing_factory) == {"growth"}

    async def test_inner_failure_discards_outer_work(self, committing_factory):
        with pytest.raises(ValueError):
            async with transaction() as outer:
                outer.add(plan_row("starter"))
                await outer.flush()

                async with transaction() as inner:
                    inner.add(plan_row("growth"))
                    await inner.flush()
                    raise ValueError("proration charge failed")

        assert await stored_plan_ids(committing_factory) == set()


class TestGetSession:
    async def test_standalone_commits(self, committing_factory):
        async with get_session() as session:
            session.add(plan_row("starter"))

        assert await stored_plan_ids(committing_factory) == {"starter"}

    async def test_standalone_rolls_back(self, committing_factory):
        with pytest.raises(ValueError):
            async with get_session() as session:
                session.add(plan_row("starter"))
                await session.flush()
                raise ValueError("boom")

        assert await stored_plan_ids(committing_factory) == set()

    async def test_joins_enclosing_transaction(self, committing_factory):
        async with transaction() as tx_session:
            for plan_id in ("starter", "growth", "professional"):
                async with get_session() as session:
                    assert session is tx_session
                    session.add(plan_row(plan_id))

        assert await stored_plan_ids(committing_factory) == {
            "starter",
            "growth",
            "professional",
        }

    async def test_standalone_sessions_are_separate(self, committing_factory):
        async with get_session() as first:
            async with get_session() as second:
                assert first is not second
                assert (await second.execute(text("SELECT 1"))).scalar() == 1

    async def test_forced_readonly(self, committing_factory):
        token = _force_readonly.set(True)
        try:
            async with get_session() as session:
                assert is_readonly_forced() is True
                assert (await session.execute(text("SELECT 1"))).scalar() == 1
        finally:
            _force_readonly.reset(token)


class TestConcurrentTransactions:
    async def test_each_task_gets_its_own_session(self, committing_factory):
        seen = {}

        async def run(name: str, delay: float):
            async with transaction() as session:
                await asyncio.sleep(delay)
                seen[name] = session
                assert get_current_session(readonly=False) is session

        await asyncio.gather(run("a", 0.01), run("b", 0.005), run("c", 0.015))

        assert len({id(s) for s in seen.values()}) == 3

    async def test_failed_task_does_not_affect_others(self, committing_factory):
        async def create(plan_id: str, fail: bool):
            async with transaction() as session:
                session.add(plan_row(plan_id))
                if fail:
                    raise ValueError(plan_id)

        results = await asyncio.gather(
            create("starter", False),
            create("growth", True),
            create("enterprise", False),
            return_exceptions=True,
        )

        assert isinstance(results[1], ValueError)
        assert await stored_plan_ids(committing_factory) == {"starter", "enterprise"}
