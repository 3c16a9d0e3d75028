from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.auth import AuthService
from chatrelay.service.conversations import ConversationService
from chatrelay.service.email import EmailService
from chatrelay.service.gateway import UpstreamGateway
from chatrelay.service.rate_limit import (
    CounterStore,
    MemoryCounterStore,
    RateLimiter,
    policies_from_settings,
)
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
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
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; unset it to use "
                        "in-process rate-limit counters."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )

        self.counters: CounterStore = self.cache or MemoryCounterStore()
        self.rate_limiter = RateLimiter(self.counters, policies_from_settings(self.settings))
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            counters=self.counters,
            email=self.email,
        )
        self.gateway = UpstreamGateway(self.settings)
        self.conversations = ConversationService(self.store)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            upstream_configured=self.gateway.is_configured,
            chat_model=self.settings.chat_model,
            image_model=self.settings.image_model,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.gateway.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                asyncio.get_running_loop().create_task(previous.cache.close())
            except RuntimeError:
                asyncio.run(previous.cache.close())
        runtime = Runtime()
        return runtime
