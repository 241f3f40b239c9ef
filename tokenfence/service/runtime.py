from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenfence.config import get_settings, reset_settings_cache
from tokenfence.logging import get_logger
from tokenfence.service.auth import AuthService
from tokenfence.service.cache import CacheAside
from tokenfence.service.countries import CountryService
from tokenfence.service.menus import MenuService
from tokenfence.service.rate_limit import RateLimiter
from tokenfence.service.revocation import RevocationLedger
from tokenfence.service.tokens import TokenCodec
from tokenfence.storage.memory import MemoryStore
from tokenfence.storage.postgres import PostgresStore
from tokenfence.storage.ttl_store import MemoryTTLStore, RedisTTLStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the service instances shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.ttl_store = self._build_ttl_store()

        self.codec = TokenCodec.from_settings(self.settings)
        self.ledger = RevocationLedger(
            self.ttl_store,
            self.codec,
            # A fence must outlive every credential it can reject
            fence_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            read_policy=self.settings.revocation_read_policy,
            write_policy=self.settings.revocation_write_policy,
        )
        self.auth = AuthService(self.store, self.codec, self.ledger)
        self.cache = CacheAside(self.ttl_store, enabled=self.settings.cache_enabled)
        self.countries = CountryService(self.store, self.cache)
        self.menus = MenuService(self.store, self.cache)
        self.rate_limiter = RateLimiter(
            self.ttl_store, enabled=self.settings.rate_limit_enabled
        )

        logger.info(
            "runtime_initialized",
            ttl_store=type(self.ttl_store).__name__,
            cache_enabled=self.settings.cache_enabled,
            rate_limit_enabled=self.settings.rate_limit_enabled,
            revocation_read_policy=self.settings.revocation_read_policy.value,
            revocation_write_policy=self.settings.revocation_write_policy.value,
        )

    def _build_ttl_store(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps the pool off short-lived event loops
                store = RedisTTLStore.from_url(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout_seconds,
                    sync=self.settings.test_mode,
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation and the read cache; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and cached reads "
                "are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryTTLStore()

    async def close(self) -> None:
        await self.ttl_store.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.ttl_store, RedisTTLStore):
            try:
                asyncio.run(runtime.ttl_store.close())
            except RuntimeError as exc:
                # Already inside a running loop or the client is gone
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
