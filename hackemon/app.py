from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hackemon.api.error_handling import register_exception_handlers
from hackemon.api.routes import router
from hackemon.config import get_settings
from hackemon.logging import get_logger, set_correlation_id
from hackemon.service.runtime import get_runtime
from hackemon.service.tokens import RefreshTokenRegistry

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()

_prune_task: asyncio.Task | None = None

MIN_PRUNE_INTERVAL_SECONDS = 60


async def _run_refresh_token_prune(registry: RefreshTokenRegistry, interval_seconds: int) -> None:
    """Background loop that drops expired refresh tokens from the registry."""

    interval = max(interval_seconds, MIN_PRUNE_INTERVAL_SECONDS)
    try:
        while True:
            try:
                removed = await asyncio.to_thread(registry.prune_expired)
                if removed:
                    logger.info("refresh_tokens_pruned", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("refresh_token_prune_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("refresh_token_prune_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _prune_task
    runtime = get_runtime()
    _prune_task = asyncio.create_task(
        _run_refresh_token_prune(
            runtime.registry, runtime.settings.refresh_prune_interval_seconds
        )
    )
    logger.info("app_started", version=__version__)

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hackemon Auth API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; never a wildcard since the bearer header is allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8080",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8080",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or a new UUID).

    The id lands in every log line for the request and in error bodies as
    ``request_id``.
    """
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
    # tokens travel in these bodies
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
