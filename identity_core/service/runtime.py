from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from identity_core.config import get_settings, reset_settings_cache
from identity_core.logging import get_logger
from identity_core.service.authorize import AuthorizeFlow
from identity_core.service.code_store import (
    AuthorizationCodeStore,
    RedisAuthorizationCodeStore,
)
from identity_core.service.revocation import RevocationReconciler
from identity_core.service.token_flow import TokenFlow
from identity_core.service.tokens import TokenService
from identity_core.storage.memory import MemoryStore
from identity_core.storage.postgres import PostgresStore
from identity_core.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<unparseable>"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            jwt_alg=self.settings.jwt_alg.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        ttl = self.settings.authorization_code_ttl_seconds
        if self.cache:
            self.code_store = RedisAuthorizationCodeStore(self.cache, ttl)
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required so authorization codes stay single-use across instances; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; authorization codes are "
                    "process-local and only safe for a single instance."
                ),
                mode=fallback_mode,
            )
            self.code_store = AuthorizationCodeStore(ttl)

        self.reconciler = RevocationReconciler(
            self.store,
            interval_seconds=self.settings.revocation_retry_interval_seconds,
            max_attempts=self.settings.revocation_max_attempts,
        )
        self.tokens = TokenService(self.settings, self.store, reconciler=self.reconciler)
        self.authorize_flow = AuthorizeFlow(self.store, self.code_store)
        self.token_flow = TokenFlow(self.store, self.code_store, self.tokens)
        logger.info(
            "runtime_init_completed",
            grant_store="redis" if self.cache else "memory",
        )

    async def start_background_tasks(self) -> None:
        await self.code_store.start()
        await self.reconciler.start()

    async def stop_background_tasks(self) -> None:
        await self.reconciler.stop()
        await self.code_store.stop()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
