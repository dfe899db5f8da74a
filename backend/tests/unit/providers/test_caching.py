import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from pydantic import BaseModel

from common.providers.caching import cache, invalidate_cache_keys
from common.providers.caching.memory_cache import MemoryCache


class PlanSummary(BaseModel):
    id: str
    credits: int


class PlanLookup:
    def __init__(self):
        self.call_count = 0
        self.exists_call_count = 0

    @cache(PlanSummary, ttl=60)
    async def get_plan(self, plan_id: str) -> PlanSummary:
        self.call_count += 1
        return PlanSummary(id=plan_id, credits=500)

    @cache(PlanSummary, ttl=60, key_generator=lambda plan_id: f"plan:{plan_id}")
    async def get_plan_by_key(self, plan_id: str) -> PlanSummary:
        self.call_count += 1
        return PlanSummary(id=plan_id, credits=500)

    @cache(PlanSummary, ttl=60)
    async def find_plan(self, plan_id: str):
        self.call_count += 1
        return None

    @cache(bool, ttl=60)
    async def exists(self, plan_id: str) -> bool:
        self.exists_call_count += 1
        return plan_id != "missing"


class TestCacheDecorator:
    async def test_pydantic_result_is_cached(self):
        lookup = PlanLookup()

        first = await lookup.get_plan("starter")
        second = await lookup.get_plan("starter")

        assert first == second == PlanSummary(id="starter", credits=500)
        assert lookup.call_count == 1

        await lookup.get_plan("pro")
        assert lookup.call_count == 2

    async def test_plain_types_are_cached(self):
        lookup = PlanLookup()

        assert await lookup.exists("starter") is True
        assert await lookup.exists("starter") is True
        assert await lookup.exists("missing") is False
        assert lookup.exists_call_count == 2

    async def test_key_generator_excludes_self(self, memory_cache):
        lookup = PlanLookup()

        await lookup.get_plan_by_key("starter")

        assert await memory_cache.get("plan:starter") == {
            "id": "starter",
            "credits": 500,
        }

    async def test_none_is_not_cached(self):
        lookup = PlanLookup()

        assert await lookup.find_plan("starter") is None
        assert await lookup.find_plan("starter") is None
        assert lookup.call_count == 2

    async def test_invalidate_forces_reload(self):
        lookup = PlanLookup()
        await lookup.get_plan_by_key("starter")

        await invalidate_cache_keys("plan:starter", "plan:unknown")
        await lookup.get_plan_by_key("starter")

        assert lookup.call_count == 2

    async def test_broken_cache_degrades_to_miss(self):
        broken = MagicMock()
        broken.get = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.set = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.delete = AsyncMock(side_effect=ConnectionError("redis down"))

        with patch("common.providers.caching.factory._cache_provider", broken):
            lookup = PlanLookup()
            assert (await lookup.get_plan("starter")).credits == 500
            assert (await lookup.get_plan("starter")).credits == 500
            await invalidate_cache_keys("plan:starter")

        assert lookup.call_count == 2


class TestMemoryCache:
    async def test_ttl_expiry(self):
        memory = MemoryCache()
        with patch("common.providers.caching.memory_cache.time.monotonic") as clock:
            clock.return_value = 100.0
            await memory.set("tenant:t1:credit_balance", "42.00", ttl=10)

            clock.return_value = 109.0
            assert await memory.get("tenant:t1:credit_balance") == "42.00"

            clock.return_value = 110.0
            assert await memory.get("tenant:t1:credit_balance") is None

    async def test_delete_pattern(self):
        memory = MemoryCache()
        await memory.set("tenant:t1:credit_balance", "1")
        await memory.set("tenant:t1:subscription", {"id": 1})
        await memory.set("tenant:t2:credit_balance", "2")

        assert await memory.delete_pattern("tenant:t1:*") == 2
        assert await memory.get("tenant:t2:credit_balance") == "2"

    async def test_delete_reports_missing_key(self):
        memory = MemoryCache()
        await memory.set("subscription:1", {"id": 1})

        assert await memory.delete("subscription:1") is True
        assert await memory.delete("subscription:1") is False

    @pytest.mark.parametrize("ttl", [None, 0])
    async def test_no_ttl_never_expires(self, ttl):
        memory = MemoryCache()
        await memory.set("subscription_plan:starter", {"id": "starter"}, ttl=ttl)

        with patch(
            "common.providers.caching.memory_cache.time.monotonic",
            return_value=10**9,
        ):
            assert await memory.get("subscription_plan:starter") == {"id": "starter"}
