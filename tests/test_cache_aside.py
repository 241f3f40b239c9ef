"""Unit tests for the cache-aside layer."""

from unittest.mock import AsyncMock

import pytest

from tokenfence.service.cache import CacheAside, CacheKeys, CacheTTL
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import MemoryTTLStore


class CountingLoader:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.value


class _DownStore:
    def __init__(self):
        error = StoreUnavailable("test")
        for name in ("get", "set", "delete", "scan_keys"):
            setattr(self, name, AsyncMock(side_effect=error))


class TestReadThrough:
    async def test_second_read_is_served_from_cache(self):
        cache = CacheAside(MemoryTTLStore())
        loader = CountingLoader({"id": 1})

        assert await cache.read_through("k", loader, CacheTTL.SHORT) == {"id": 1}
        assert await cache.read_through("k", loader, CacheTTL.SHORT) == {"id": 1}
        assert loader.calls == 1

    async def test_invalidate_forces_reload(self):
        cache = CacheAside(MemoryTTLStore())
        loader = CountingLoader([1, 2])

        await cache.read_through("k", loader, CacheTTL.SHORT)
        assert await cache.invalidate(["k"]) == 1
        await cache.read_through("k", loader, CacheTTL.SHORT)

        assert loader.calls == 2

    async def test_entry_expires_with_ttl(self, clock):
        cache = CacheAside(MemoryTTLStore(clock=clock))
        loader = CountingLoader("v")

        await cache.read_through("k", loader, CacheTTL.VERY_SHORT)
        clock.advance(CacheTTL.VERY_SHORT)
        await cache.read_through("k", loader, CacheTTL.VERY_SHORT)

        assert loader.calls == 2

    async def test_none_is_not_cached(self):
        cache = CacheAside(MemoryTTLStore())
        loader = CountingLoader(None)

        assert await cache.read_through("k", loader, CacheTTL.SHORT) is None
        assert await cache.read_through("k", loader, CacheTTL.SHORT) is None
        assert loader.calls == 2

    async def test_async_loader_and_codecs(self):
        store = MemoryTTLStore()
        cache = CacheAside(store)

        async def loader():
            return {1, 2}

        value = await cache.read_through(
            "k", loader, CacheTTL.SHORT, encode=sorted, decode=set
        )
        assert value == {1, 2}
        assert await store.get("k") == [1, 2]
        assert await cache.read_through("k", loader, CacheTTL.SHORT, decode=set) == {1, 2}

    async def test_disabled_cache_always_loads(self):
        cache = CacheAside(MemoryTTLStore(), enabled=False)
        loader = CountingLoader("v")
        await cache.read_through("k", loader, CacheTTL.SHORT)
        await cache.read_through("k", loader, CacheTTL.SHORT)
        assert loader.calls == 2

    async def test_store_outage_falls_through_to_loader(self):
        cache = CacheAside(_DownStore())
        loader = CountingLoader("v")

        assert await cache.read_through("k", loader, CacheTTL.SHORT) == "v"
        assert await cache.invalidate(["k"]) == 0
        assert await cache.invalidate_by_pattern("country:list:") == 0


class TestPatternInvalidation:
    async def test_removes_only_keys_with_prefix(self):
        store = MemoryTTLStore()
        cache = CacheAside(store)
        await store.set(CacheKeys.country_list({"page": 1}), 1, 60)
        await store.set(CacheKeys.country_list({"page": 2}), 1, 60)
        await store.set(CacheKeys.country_id("c1"), 1, 60)

        removed = await cache.invalidate_by_pattern(CacheKeys.COUNTRY_LIST_PREFIX)

        assert removed == 2
        assert await store.exists(CacheKeys.country_id("c1")) is True

    async def test_glob_characters_in_prefix_are_literal(self):
        store = MemoryTTLStore()
        cache = CacheAside(store)
        await store.set("a[1]:x", 1, 60)
        await store.set("a1:x", 1, 60)

        assert await cache.invalidate_by_pattern("a[1]") == 1
        assert await store.exists("a1:x") is True


class TestCacheKeys:
    def test_list_key_ignores_option_order_and_none(self):
        assert CacheKeys.country_list({"b": 2, "a": 1, "c": None}) == CacheKeys.country_list(
            {"a": 1, "b": 2}
        )

    def test_code_key_is_upper_case(self):
        assert CacheKeys.country_code("us") == "country:code:US"

    @pytest.mark.parametrize(
        "tier,seconds",
        [("VERY_SHORT", 60), ("SHORT", 300), ("MEDIUM", 900), ("LONG", 3600), ("VERY_LONG", 86400), ("WEEK", 604800)],
    )
    def test_ttl_tiers(self, tier, seconds):
        assert CacheTTL[tier] == seconds
