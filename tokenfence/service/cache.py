from __future__ import annotations

import inspect
import json
import re
from enum import IntEnum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar, Union

from tokenfence.logging import get_logger
from tokenfence.storage.errors import StoreUnavailable
from tokenfence.storage.ttl_store import TTLStore

logger = get_logger(__name__)

T = TypeVar("T")

Loader = Callable[[], Union[Optional[T], Awaitable[Optional[T]]]]

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class CacheTTL(IntEnum):
    """Lifetime tiers for cached reads, in seconds."""

    VERY_SHORT = 60
    SHORT = 300
    MEDIUM = 900
    LONG = 3600
    VERY_LONG = 86400
    WEEK = 604800


def _options_suffix(options: Mapping[str, Any]) -> str:
    # Sorted keys and dropped None values keep equivalent queries on one key
    normalized = {k: v for k, v in options.items() if v is not None}
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)


class CacheKeys:
    """Deterministic cache key builders, one family per entity class."""

    COUNTRY_LIST_PREFIX = "country:list:"
    COUNTRY_ACTIVE = "country:active"
    MENU_LIST_PREFIX = "menus:list:"
    MENUS_ACTIVE = "menus:active"
    MENUS_TREE = "menus:tree"
    MENUS_TREE_ALL = "menus:tree:all"

    @staticmethod
    def country_id(country_id: str) -> str:
        return f"country:id:{country_id}"

    @staticmethod
    def country_code(code: str) -> str:
        return f"country:code:{code.upper()}"

    @classmethod
    def country_list(cls, options: Mapping[str, Any]) -> str:
        return f"{cls.COUNTRY_LIST_PREFIX}{_options_suffix(options)}"

    @staticmethod
    def menu_id(menu_id: str) -> str:
        return f"menu:id:{menu_id}"

    @staticmethod
    def menu_route(route: str) -> str:
        return f"menu:route:{route}"

    @classmethod
    def menu_list(cls, options: Mapping[str, Any]) -> str:
        return f"{cls.MENU_LIST_PREFIX}{_options_suffix(options)}"


class CacheAside:
    """Read-through population and write-path invalidation over a TTL store.

    The cache is never authoritative: any store failure degrades to a direct
    loader call on reads and to a logged no-op on invalidation, bounded by the
    entry's own TTL.
    """

    def __init__(self, store: TTLStore, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled

    async def _load(self, loader: Loader) -> Any:
        result = loader()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def read_through(
        self,
        key: str,
        loader: Loader,
        ttl: int,
        *,
        encode: Optional[Callable[[Any], Any]] = None,
        decode: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        if not self.enabled:
            return await self._load(loader)
        try:
            cached = await self.store.get(key)
        except StoreUnavailable as exc:
            logger.warning("cache_read_failed", key=key, error=str(exc))
            cached = None
        if cached is not None:
            logger.debug("cache_hit", key=key)
            return decode(cached) if decode else cached

        value = await self._load(loader)
        if value is None:
            return None
        try:
            await self.store.set(key, encode(value) if encode else value, int(ttl))
        except StoreUnavailable as exc:
            logger.warning("cache_write_failed", key=key, error=str(exc))
        return value

    async def invalidate(self, keys: Iterable[str]) -> int:
        batch = sorted({key for key in keys if key})
        if not batch:
            return 0
        try:
            removed = await self.store.delete(batch)
        except StoreUnavailable as exc:
            logger.warning("cache_invalidate_failed", keys=batch, error=str(exc))
            return 0
        logger.debug("cache_invalidated", keys=batch, removed=removed)
        return removed

    async def invalidate_by_pattern(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``."""
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        try:
            keys = await self.store.scan_keys(pattern)
            removed = await self.store.delete(keys) if keys else 0
        except StoreUnavailable as exc:
            logger.warning("cache_pattern_invalidate_failed", prefix=prefix, error=str(exc))
            return 0
        logger.debug("cache_pattern_invalidated", prefix=prefix, removed=removed)
        return removed
