"""Fixed-window rate limiting over the TTL store."""

from unittest.mock import AsyncMock

from tokenfence.service.rate_limit import RATE_PREFIX, RateLimiter
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import MemoryTTLStore


async def test_allows_up_to_limit_then_rejects(clock):
    limiter = RateLimiter(MemoryTTLStore(clock=clock))

    first = await limiter.check("login:a@x.com", 2, 60)
    second = await limiter.check("login:a@x.com", 2, 60)
    third = await limiter.check("login:a@x.com", 2, 60)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.reset_seconds == 60


async def test_window_resets_when_counter_expires(clock):
    limiter = RateLimiter(MemoryTTLStore(clock=clock))
    for _ in range(3):
        await limiter.check("verify:10.0.0.1", 2, 60)

    clock.advance(30)
    blocked = await limiter.check("verify:10.0.0.1", 2, 60)
    assert blocked.allowed is False
    assert blocked.reset_seconds == 30

    clock.advance(30)
    assert (await limiter.check("verify:10.0.0.1", 2, 60)).allowed is True


async def test_keys_are_counted_separately(clock):
    limiter = RateLimiter(MemoryTTLStore(clock=clock))
    await limiter.check("login:a@x.com", 1, 60)

    assert (await limiter.check("login:a@x.com", 1, 60)).allowed is False
    assert (await limiter.check("login:b@x.com", 1, 60)).allowed is True


async def test_key_is_hashed():
    store = MemoryTTLStore()
    limiter = RateLimiter(store)
    await limiter.check("login:a@x.com", 5, 60)

    keys = await store.scan_keys(f"{RATE_PREFIX}*")
    assert keys == [RateLimiter.rate_key("login:a@x.com")]
    assert "a@x.com" not in keys[0]


async def test_zero_limit_and_disabled_limiter_allow_everything():
    store = MemoryTTLStore()

    assert (await RateLimiter(store).check("k", 0, 60)).allowed is True
    disabled = RateLimiter(store, enabled=False)
    for _ in range(5):
        assert (await disabled.check("k", 1, 60)).allowed is True
    assert await store.scan_keys(f"{RATE_PREFIX}*") == []


async def test_invalid_window_falls_back_to_a_minute(clock):
    store = MemoryTTLStore(clock=clock)
    result = await RateLimiter(store).check("k", 1, 0)

    assert result.allowed is True
    assert await store.ttl(RateLimiter.rate_key("k")) == 60


async def test_store_down_allows_request():
    store = MemoryTTLStore()
    store.incr = AsyncMock(side_effect=StoreUnavailable("incr"))

    result = await RateLimiter(store).check("login:a@x.com", 1, 60)

    assert result.allowed is True
