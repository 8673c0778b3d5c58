from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from hackemon.config import Settings, get_settings, reset_settings_cache
from hackemon.logging import get_logger
from hackemon.service.auth import AuthService
from hackemon.service.lockout import LockoutGuard
from hackemon.service.passwords import PasswordPolicy
from hackemon.service.tokens import RefreshTokenRegistry, TokenCodec
from hackemon.storage.memory import MemoryStore
from hackemon.storage.postgres import PostgresStore
from hackemon.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before logging it.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.use_memory_store:
        fs_root = settings.state_dir if settings.persist_memory_store else None
        return MemoryStore(fs_root=fs_root)
    return PostgresStore(settings.database_url)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.started_at = datetime.now(timezone.utc)
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError, ValueError) as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login lockout state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login lockout "
                    "counters are per-process only."
                ),
                mode=fallback_mode,
            )

        self.codec = TokenCodec.from_settings(self.settings)
        self.registry = RefreshTokenRegistry(self.store, self.codec)
        self.policy = PasswordPolicy(min_length=self.settings.password_min_length)
        self.lockout = LockoutGuard(
            self.cache,
            max_attempts=self.settings.lockout_max_attempts,
            lockout_seconds=self.settings.lockout_duration_seconds,
            window_seconds=self.settings.lockout_window_seconds,
        )
        self.auth = AuthService(
            self.store, self.codec, self.registry, self.policy, self.settings
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from both building one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
    return runtime


def _close_cache_quietly(current: Runtime) -> None:
    if current.cache is None:
        return
    try:
        if isinstance(current.cache, SyncRedisCache):
            current.cache.client.close()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(current.cache.close())
        else:
            loop.create_task(current.cache.close())
    except (RedisError, OSError) as exc:
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_cache_quietly(runtime)
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
