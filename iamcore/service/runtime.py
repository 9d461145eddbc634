from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from iamcore.config import Settings, get_settings, reset_settings_cache
from iamcore.logging import get_logger
from iamcore.service.auth import AuthService
from iamcore.service.notifications import Notifier
from iamcore.service.sweeper import ExpirySweeper
from iamcore.storage.memory import MemoryStore
from iamcore.storage.postgres import PostgresStore
from iamcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""

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
    """Wires the store, cache and identity services from settings."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                fs_root = (
                    self.settings.shared_fs_root
                    if self.settings.persist_memory_store
                    else None
                )
                self.store = MemoryStore(fs_root, secret_key=self.settings.mfa_secret_key)
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    secret_key=self.settings.mfa_secret_key,
                    fs_root=self.settings.shared_fs_root,
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

        self.cache = self._connect_cache()
        self.notifier = Notifier.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            cache=self.cache,
            notifier=self.notifier,
        )
        self.sweeper = ExpirySweeper(
            self.store,
            interval=self.settings.sweep_interval_seconds,
            retention_days=self.settings.session_retention_days,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.email.is_configured,
            mfa_enabled=self.settings.enable_mfa,
        )

    def _connect_cache(self) -> RedisCache | None:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = (
                    SyncRedisCache(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisCache(self.settings.redis_url)
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OAuth state and MFA attempt tracking; start Redis or "
                "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def start(self) -> None:
        if self.settings.sweep_interval_seconds > 0:
            await self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.notifier.drain()
        if self.cache is not None:
            await self.cache.close()
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a freshly read environment (TEST_MODE only)."""

    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
                else:
                    loop.create_task(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
