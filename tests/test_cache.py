"""
Tests for memo tables and the reach metadata cache.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from rivrflow.cache import (
    REACH_CACHE_PREFIX,
    CacheRegistry,
    MemoTable,
    ReachCache,
    cache_key,
)
from rivrflow.units import FlowUnit

from .conftest import FakeKeyValueStore, make_reach


class TestCacheKey:
    """Test memo key construction."""

    def test_default_variant(self):
        assert cache_key("123") == ("123", "default")

    def test_unit_is_part_of_key(self):
        assert cache_key("123", "short_range", "cms") == ("123", "short_range", FlowUnit.CMS)
        assert cache_key("123", unit=FlowUnit.CFS) != cache_key("123", unit=FlowUnit.CMS)


class TestMemoTable:
    """Test memoization and per-reach invalidation."""

    def test_get_or_compute_computes_once(self):
        table = MemoTable("flows")
        calls = []

        def compute():
            calls.append(1)
            return 42

        assert table.get_or_compute(cache_key("1"), compute) == 42
        assert table.get_or_compute(cache_key("1"), compute) == 42
        assert len(calls) == 1

    def test_memoizes_none(self):
        table = MemoTable("flows")
        calls = []
        table.get_or_compute(cache_key("1"), lambda: calls.append(1))
        table.get_or_compute(cache_key("1"), lambda: calls.append(1))
        assert len(calls) == 1

    def test_invalidate_reach_does_not_touch_prefix_matches(self):
        table = MemoTable("flows")
        table.set(cache_key("12"), "a")
        table.set(cache_key("12", "short_range"), "b")
        table.set(cache_key("123"), "c")

        assert table.invalidate_reach("12") == 2
        assert len(table) == 1
        assert cache_key("123") in table


class TestCacheRegistry:
    """Test unit-sensitive and unit-independent table groups."""

    def test_clear_unit_dependent_keeps_other_tables(self):
        registry = CacheRegistry()
        flows = registry.table("current_flow", unit_sensitive=True)
        locations = registry.table("formatted_location")
        flows.set(cache_key("1", unit=FlowUnit.CFS), 10.0)
        locations.set(cache_key("1"), "Bend, OR")

        registry.clear_unit_dependent()

        assert len(flows) == 0
        assert len(locations) == 1

    def test_table_is_registered_once(self):
        registry = CacheRegistry()
        assert registry.table("x", unit_sensitive=True) is registry.table("x")

    def test_invalidate_reach_and_stats(self):
        registry = CacheRegistry()
        registry.table("a").set(cache_key("1"), 1)
        registry.table("b").set(cache_key("1"), 2)
        registry.table("b").set(cache_key("2"), 3)

        assert registry.invalidate_reach("1") == 2
        assert registry.stats() == {"a": 0, "b": 1}

        registry.clear_all()
        assert registry.stats() == {"a": 0, "b": 0}


class TestReachCache:
    """Test the JSON reach cache over a key-value store."""

    @pytest.fixture
    def store(self):
        return FakeKeyValueStore()

    @pytest.mark.asyncio
    async def test_store_and_get(self, store):
        cache = ReachCache(store)
        await cache.store(make_reach("123", city="Bend", state="OR"))

        cached = await cache.get("123")

        assert cached is not None
        assert cached.city == "Bend"
        assert f"{REACH_CACHE_PREFIX}123" in store.values
        assert cache.stats() == {"hits": 1, "misses": 1, "writes": 1}

    @pytest.mark.asyncio
    async def test_miss(self, store):
        assert await ReachCache(store).get("missing") is None

    @pytest.mark.asyncio
    async def test_store_merges_with_existing_record(self, store):
        cache = ReachCache(store)
        await cache.store(make_reach("123", city="Bend", state="OR"))

        # A return-period update without location fields
        await cache.store(make_reach("123", latitude=0.0, longitude=0.0, return_periods={2: 80.0}))

        cached = await cache.get("123")
        assert cached.return_periods == {2: 80.0}
        assert cached.city == "Bend"
        assert cached.latitude == 45.5

    @pytest.mark.asyncio
    async def test_stale_entry_is_removed(self, store):
        cache = ReachCache(store, max_age=timedelta(days=1))
        old = make_reach("123", cached_at=datetime.now(timezone.utc) - timedelta(days=2))
        store.values[f"{REACH_CACHE_PREFIX}123"] = json.dumps({"data": old.to_dict()})

        assert await cache.get("123") is None
        assert f"{REACH_CACHE_PREFIX}123" not in store.values

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_removed(self, store):
        store.values[f"{REACH_CACHE_PREFIX}123"] = "{not json"
        cache = ReachCache(store)

        assert await cache.get("123") is None
        assert store.values == {}
