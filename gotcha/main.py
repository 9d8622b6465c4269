"""
Application factory and composition root.

Owns the long-lived collaborators: key lookup cache, background executor
for last-used writes, counter store clients. Tests pass their own
Admission built on in-memory stores.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError

from gotcha.api import health, internal, responses
from gotcha.api.dependencies import Admission
from gotcha.core.config import Settings, settings, validate_config
from gotcha.core.database import get_engine, get_session_factory
from gotcha.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from gotcha.core.logging import configure_logging
from gotcha.core.middleware.request_id import RequestIdMiddleware
from gotcha.core.redis import get_redis
from gotcha.core.validation import validate_env
from gotcha.features.api_keys.service import (
    ApiKeyAuthenticator,
    ApiKeyLookupCache,
    LastUsedRecorder,
    SqlApiKeyStore,
)
from gotcha.features.idempotency.service import IdempotencyGuard, RedisIdempotencyCache
from gotcha.features.ratelimit.service import RedisSlidingWindowStore, SlidingWindowRateLimiter


def build_admission(
    cfg: Optional[Settings] = None,
    *,
    session_factory=None,
    rate_store=None,
    idempotency_cache=None,
    executor=None,
) -> Admission:
    """Wire the admission stages from settings; any store may be overridden."""
    cfg = cfg or settings
    session_factory = session_factory or get_session_factory()

    store = SqlApiKeyStore(session_factory)
    cache = ApiKeyLookupCache(
        ttl_seconds=cfg.API_KEY_CACHE_TTL_SECONDS,
        max_entries=cfg.API_KEY_CACHE_MAX_ENTRIES,
    )
    executor = executor or ThreadPoolExecutor(max_workers=cfg.LAST_USED_WORKERS, thread_name_prefix="last-used")
    authenticator = ApiKeyAuthenticator(
        store,
        cache=cache,
        recorder=LastUsedRecorder(store, executor),
        prefix=cfg.API_KEY_PREFIX,
    )

    if rate_store is None:
        rate_store = RedisSlidingWindowStore(get_redis())
    if idempotency_cache is None:
        idempotency_cache = RedisIdempotencyCache(get_redis(), prefix=cfg.IDEMPOTENCY_PREFIX)

    return Admission(
        authenticator=authenticator,
        rate_limiter=SlidingWindowRateLimiter(
            rate_store,
            window_seconds=cfg.RATE_LIMIT_WINDOW_SECONDS,
            prefix=cfg.RATE_LIMIT_PREFIX,
            enabled=cfg.RATE_LIMIT_ENABLED,
        ),
        idempotency=IdempotencyGuard(idempotency_cache, ttl_seconds=cfg.IDEMPOTENCY_TTL_SECONDS),
        session_factory=session_factory,
        app_host=cfg.APP_HOST,
        internal_api_key=cfg.INTERNAL_SDK_API_KEY,
    )


def create_app(admission: Optional[Admission] = None, *, cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or settings
    configure_logging(cfg.ENV, key_prefix=cfg.API_KEY_PREFIX)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("gotcha")
        logger.info("Starting Gotcha API...")
        if getattr(app.state, "admission", None) is None:
            validate_env(settings_obj=cfg)
            validate_config(settings_obj=cfg)
            app.state.admission = build_admission(cfg)
            app.state.engine = get_engine()
        try:
            yield
        finally:
            recorder = app.state.admission.authenticator.recorder
            if recorder is not None:
                # Let dispatched last-used writes finish; they never block requests
                recorder.executor.shutdown(wait=True)
            logger.info("Stopping Gotcha API...")

    app = FastAPI(title="Gotcha API", lifespan=lifespan)
    app.state.admission = admission

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(responses.router)
    app.include_router(internal.router)
    return app


app = create_app()
