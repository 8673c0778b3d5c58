from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from hackemon.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ISSUER = "hackemon-app"
DEFAULT_AUDIENCE = "hackemon-users"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hackemon", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field(
        ".hackemon", "STATE_DIR", description="Local state (memory store snapshot, generated secret)"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to a JSON snapshot under STATE_DIR",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and Redis fallback.",
    )

    # tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field(DEFAULT_ISSUER, "JWT_ISSUER")
    jwt_audience: str = env_field(DEFAULT_AUDIENCE, "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0)
    refresh_prune_interval_seconds: int = env_field(
        3600,
        "REFRESH_PRUNE_INTERVAL_SECONDS",
        description="How often expired refresh tokens are dropped from the registry",
    )

    # passwords
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=12)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # login lockout
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", ge=1)
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS", ge=1)
    lockout_window_seconds: int = env_field(
        15 * 60,
        "LOCKOUT_WINDOW_SECONDS",
        ge=1,
        description="Failures older than this window no longer count toward a lockout",
    )
    lockout_include_ip: bool = env_field(
        False, "LOCKOUT_INCLUDE_IP", description="Key lockouts by identifier and client IP"
    )

    # http
    host: str = env_field("127.0.0.1", "HOST")
    port: int = env_field(8000, "PORT", ge=1, le=65535)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        state_dir = Path(info.data.get("state_dir") or ".hackemon")
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


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
