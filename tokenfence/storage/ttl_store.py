from __future__ import annotations

import contextlib
import json
import re
import threading
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from tokenfence.logging import get_logger
from tokenfence.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# Keys requested per SCAN round trip
SCAN_BATCH_SIZE = 100

_STORE_ERRORS = (RedisError, OSError, TimeoutError)


class TTLStore(Protocol):
    """Key-value store where every key may carry an expiration.

    Values are JSON documents. Any failure to reach the backing store is
    raised as ``StoreUnavailable`` so callers can apply their own policy.
    """

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def delete(self, keys: Iterable[str]) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def scan_keys(self, pattern: str) -> List[str]: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Values written by other tools may not be JSON
        return raw


def _check_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
    return ttl


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a Redis glob (``*``, ``?``, ``[...]``, ``\\`` escapes) to a regex."""
    out = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            out.append(".*")
        elif char == "?":
            out.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(char))
            else:
                body = pattern[i + 1 : end]
                negate = body.startswith("^")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\").replace("[", "\\[")
                out.append(f"[{'^' if negate else ''}{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures.

    Lets RedisTTLStore drive a synchronous client in test mode without
    binding a connection pool to a short-lived event loop.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> Optional[bool]:
        return self._sync.set(key, value, ex=ex, nx=nx)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def incr(self, key: str) -> int:
        return self._sync.incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._sync.expire(key, seconds)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def keys(self, pattern: str) -> List[str]:
        return self._sync.keys(pattern)

    async def scan_iter(self, match: str, count: int) -> AsyncIterator[str]:
        for key in self._sync.scan_iter(match=match, count=count):
            yield key

    async def ping(self) -> bool:
        return self._sync.ping()

    async def aclose(self) -> None:
        self._sync.close()


class RedisTTLStore:
    """TTL store backed by Redis.

    Every command is bounded by the client's socket timeouts; a timeout or
    connection error surfaces as ``StoreUnavailable``.
    """

    def __init__(self, client: Any, *, redis_url: Optional[str] = None):
        self.client = client
        self.redis_url = redis_url

    @classmethod
    def from_url(
        cls, redis_url: str, *, socket_timeout: float = 5.0, sync: bool = False
    ) -> "RedisTTLStore":
        if sync:
            client = _SyncClientAdapter(
                Redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_timeout=socket_timeout,
                    socket_connect_timeout=socket_timeout,
                )
            )
        else:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        return cls(client, redis_url=redis_url)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextlib.contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except _STORE_ERRORS as exc:
            logger.warning(
                "ttl_store_command_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, exc) from exc

    async def get(self, key: str) -> Any:
        with self._guard("get"):
            raw = await self.client.get(key)
        return _decode(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        with self._guard("set"):
            await self.client.set(key, _encode(value), ex=ttl)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        ttl = _check_ttl(ttl_seconds)
        with self._guard("set_if_absent"):
            result = await self.client.set(key, _encode(value), ex=ttl, nx=True)
        return bool(result)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter; the window starts with the first increment."""
        ttl = _check_ttl(ttl_seconds)
        with self._guard("incr"):
            count = int(await self.client.incr(key))
            if count == 1:
                await self.client.expire(key, ttl)
        return count

    async def delete(self, keys: Iterable[str]) -> int:
        batch = list(keys)
        if not batch:
            return 0
        with self._guard("delete"):
            return int(await self.client.delete(*batch))

    async def exists(self, key: str) -> bool:
        with self._guard("exists"):
            return bool(await self.client.exists(key))

    async def scan_keys(self, pattern: str) -> List[str]:
        with self._guard("scan"):
            try:
                return [
                    key
                    async for key in self.client.scan_iter(
                        match=pattern, count=SCAN_BATCH_SIZE
                    )
                ]
            except ResponseError as exc:
                # Some proxies reject SCAN; KEYS gives the same answer in one call
                logger.warning("ttl_store_scan_rejected", pattern=pattern, error=str(exc))
                return list(await self.client.keys(pattern))

    async def ttl(self, key: str) -> Optional[int]:
        with self._guard("ttl"):
            remaining = await self.client.ttl(key)
        # -2: missing key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    async def ping(self) -> bool:
        with self._guard("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


class MemoryTTLStore:
    """In-process TTL store for tests and single-instance development.

    Expiry is evaluated lazily against an injectable clock. A thread lock makes
    each call atomic, standing in for the atomicity of a real store command.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live(key)
        return _decode(entry[0]) if entry else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            self._data[key] = (_encode(value), self._clock() + ttl)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (_encode(value), self._clock() + ttl)
            return True

    async def incr(self, key: str, ttl_seconds: int) -> int:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = (_encode(1), self._clock() + ttl)
                return 1
            count = int(_decode(entry[0])) + 1
            self._data[key] = (_encode(count), entry[1])
            return count

    async def delete(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def scan_keys(self, pattern: str) -> List[str]:
        regex = _glob_to_regex(pattern)
        with self._lock:
            return [
                key
                for key in list(self._data)
                if regex.match(key) and self._live(key) is not None
            ]

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return max(0, int(entry[1] - self._clock()))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def verify_connection(self) -> None:
        return None


__all__ = [
    "TTLStore",
    "RedisTTLStore",
    "MemoryTTLStore",
    "SCAN_BATCH_SIZE",
]
