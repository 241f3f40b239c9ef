from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokenfence.api.error_handling import register_exception_handlers
from tokenfence.api.routes import router
from tokenfence.config import Settings
from tokenfence.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Responses under these prefixes carry credentials and must never be cached
_NO_STORE_PREFIXES = ("/auth/", "/healthz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from tokenfence.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokenfence", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; avoid wildcard when credentials are enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID into the log context and back to the client."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        response.headers.setdefault("Pragma", "no-cache")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


async def _run_bounded(label: str, probe) -> bool:
    """Run a sync or async probe under the health-check timeout."""
    try:
        if inspect.iscoroutinefunction(probe):
            await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
        else:
            await asyncio.wait_for(asyncio.to_thread(probe), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and TTL store reachability plus build info."""
    from tokenfence.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    store_ok = await _run_bounded("ttl_store", runtime.ttl_store.ping)
    checks["ttl_store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.ttl_store).__name__,
    }

    return {
        "status": "healthy" if db_ok and store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app
