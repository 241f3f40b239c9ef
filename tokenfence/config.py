from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenfence.logging import get_logger

logger = get_logger(__name__)

# Minimum length accepted for a persisted signing key
_MIN_SECRET_LENGTH = 32


class RevocationPolicy(str, Enum):
    """Behaviour of a revocation check or write when the TTL store is unreachable."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(secrets_dir: str, filename: str) -> str:
    """Return a persisted signing key, generating one on first use.

    Keys are written atomically with 0600 permissions so tokens stay valid
    across restarts of a single instance.
    """
    root = Path(secrets_dir)
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the signing key env vars or make SECRETS_DIR writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the token, revocation and cache layers."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenfence", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT_SECONDS",
        description="Upper bound for every TTL store command and connect",
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    secrets_dir: str = env_field("/srv/tokenfence", "SECRETS_DIR")
    # Access and refresh credentials are signed with distinct keys
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("tokenfence", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenfence-users", "JWT_AUDIENCE")
    jwt_clock_skew_leeway_seconds: int = env_field(
        0, "JWT_CLOCK_SKEW_LEEWAY_SECONDS", ge=0, le=300
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    revocation_read_policy: RevocationPolicy = env_field(
        RevocationPolicy.FAIL_OPEN,
        "REVOCATION_READ_POLICY",
        description="Blacklist/fence lookups when the TTL store is down",
    )
    revocation_write_policy: RevocationPolicy = env_field(
        RevocationPolicy.FAIL_CLOSED,
        "REVOCATION_WRITE_POLICY",
        description="Blacklist/fence writes when the TTL store is down",
    )
    cache_enabled: bool = env_field(True, "CACHE_ENABLED")
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    rate_limit_auth_per_window: int = env_field(
        30,
        "RATE_LIMIT_AUTH_PER_WINDOW",
        ge=0,
        description="Credential requests per client and window; 0 disables the limit",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("revocation_read_policy", "revocation_write_policy")
    @classmethod
    def _validate_policy(cls, value: RevocationPolicy) -> RevocationPolicy:
        return RevocationPolicy(value)

    @model_validator(mode="after")
    def _ensure_signing_keys(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(self.secrets_dir, ".jwt_secret")
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(
                self.secrets_dir, ".jwt_refresh_secret"
            )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
