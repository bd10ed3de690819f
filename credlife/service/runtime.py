from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from credlife.config import Settings, get_settings, reset_settings_cache
from credlife.logging import get_logger
from credlife.service.cleanup_worker import CleanupWorker
from credlife.service.credentials import CredentialService
from credlife.service.hybrid import HybridCredentialRepository, HybridRepositoryConfig
from credlife.service.otp import CacheOTPRepository, DurableOTPRepository
from credlife.service.sessions import CacheSessionRepository, DurableSessionRepository
from credlife.storage.common import DocumentStore, EphemeralStore
from credlife.storage.memory import MemoryDocumentStore, MemoryKeyValueStore
from credlife.storage.models import utcnow
from credlife.storage.postgres import PostgresDocumentStore
from credlife.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Replaces password component with '***' to prevent sensitive data leakage in logs.
    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the stores, repositories and services for the process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: DocumentStore = (
                MemoryDocumentStore()
                if self.settings.use_memory_store
                else PostgresDocumentStore(self.settings.database_url)
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

        self.cache: Optional[EphemeralStore] = self._build_cache()
        self.repository = self._build_repository()
        self.credentials = CredentialService(self.repository, clock=self.clock)
        self.cleanup_worker = CleanupWorker(
            self.repository, interval=self.settings.cleanup_interval_seconds
        )

    def _build_cache(self) -> Optional[EphemeralStore]:
        if self.settings.use_memory_store:
            return MemoryKeyValueStore(clock=self.clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.store_operation_timeout_seconds,
            )
            try:
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the cached credential tier; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run durable-only."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; credentials are durable-only.",
            mode=fallback_mode,
        )
        return None

    def _build_repository(self) -> HybridCredentialRepository:
        timeout = self.settings.store_operation_timeout_seconds
        grace = self.settings.ephemeral_ttl_grace_seconds
        cache_otp = cache_sessions = None
        if self.cache is not None:
            cache_otp = CacheOTPRepository(
                self.cache, clock=self.clock, timeout_seconds=timeout, ttl_grace_seconds=grace
            )
            cache_sessions = CacheSessionRepository(
                self.cache,
                clock=self.clock,
                timeout_seconds=timeout,
                ttl_grace_seconds=grace,
                refresh_threshold_seconds=self.settings.session_ttl_refresh_threshold_seconds,
            )
        return HybridCredentialRepository(
            durable_otp=DurableOTPRepository(self.store, clock=self.clock, timeout_seconds=timeout),
            durable_sessions=DurableSessionRepository(
                self.store, clock=self.clock, timeout_seconds=timeout
            ),
            cache_otp=cache_otp,
            cache_sessions=cache_sessions,
            config=HybridRepositoryConfig(
                use_cache_for_otp=self.settings.use_cache_for_otp,
                use_cache_for_session=self.settings.use_cache_for_session,
                enable_fallback=self.settings.enable_fallback,
                fallback_on_rejection=self.settings.fallback_on_rejection,
            ),
        )

    async def aclose(self) -> None:
        await self.cleanup_worker.stop()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    # Fast path: runtime already exists
    if runtime is not None:
        return runtime
    # Slow path: acquire lock and double-check before creating
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Optional[EphemeralStore]) -> None:
    if cache is None:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            _close_cache(runtime.cache)
            runtime.store.close()
        runtime = Runtime(settings)
        return runtime
