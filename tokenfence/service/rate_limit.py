from __future__ import annotations

import hashlib
from dataclasses import dataclass

from tokenfence.logging import get_logger
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import TTLStore

logger = get_logger(__name__)

RATE_PREFIX = "rate:"
DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window request counters kept in the shared TTL store.

    The first request in a window creates the counter with the window as its
    TTL; the window resets when the key expires. Every instance behind a load
    balancer shares the same counters. When the store is unreachable the
    request is allowed and the failure is logged.
    """

    def __init__(self, store: TTLStore, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled

    @staticmethod
    def rate_key(key: str) -> str:
        # Hashing keeps client-supplied parts (emails, addresses) out of key names
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return f"{RATE_PREFIX}{digest}"

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        if not self.enabled or limit <= 0:
            return RateLimitResult(True, limit, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        rate_key = self.rate_key(key)
        try:
            count = await self.store.incr(rate_key, window_seconds)
            reset_seconds = await self.store.ttl(rate_key) or window_seconds
        except StoreUnavailable as exc:
            logger.warning(
                "rate_limit_check_failed",
                key_digest=rate_key[len(RATE_PREFIX):][:12],
                error=str(exc),
            )
            return RateLimitResult(True, limit, limit, 0)
        allowed = count <= limit
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                key_digest=rate_key[len(RATE_PREFIX):][:12],
                count=count,
                limit=limit,
            )
        return RateLimitResult(allowed, limit, max(0, limit - count), reset_seconds)

