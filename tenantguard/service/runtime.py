from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from tenantguard.config import get_settings, reset_settings_cache
from tenantguard.logging import get_logger
from tenantguard.service.alerts import SecurityAlerter
from tenantguard.service.audit import AuditSink
from tenantguard.service.auth import AuthService
from tenantguard.service.gate import TenantIsolationGate
from tenantguard.service.ownership import OwnershipValidator
from tenantguard.service.tokens import TokenService
from tenantguard.storage.memory import MemoryStore
from tenantguard.storage.postgres import PostgresStore
from tenantguard.storage.redis_cache import RedisCache, SyncRedisCache
from tenantguard.storage.revocation import (
    CachedRevocationStore,
    MemoryRevocationStore,
    RevocationStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


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
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
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

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
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
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.revocations: RevocationStore
        if self.cache:
            self.revocations = CachedRevocationStore(self.cache)
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required to share token revocations across instances; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revocations are "
                    "visible to this process only."
                ),
                mode=fallback_mode,
            )
            self.revocations = MemoryRevocationStore()

        self.alerter = SecurityAlerter(
            self.settings.alert_webhook_url,
            timeout_seconds=self.settings.alert_timeout_seconds,
        )
        self.audit = AuditSink(
            self.store,
            self.alerter,
            write_timeout=self.settings.audit_write_timeout_seconds,
            queue_size=self.settings.audit_queue_size,
        )
        self.tokens = TokenService(self.store, self.revocations, self.audit, self.settings)
        self.gate = TenantIsolationGate(self.tokens, self.audit, self.settings.exempt_paths)
        self.ownership = OwnershipValidator(self.audit, self.settings.audit_failure_policy)
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            audit_failure_policy=self.settings.audit_failure_policy.value,
        )

    async def close(self) -> None:
        await self.audit.stop()
        if self.cache is not None:
            await self.cache.close()


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
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _local_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int, cost: int
) -> Tuple[bool, int, int]:
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
    retry_after = 0 if allowed else max(1, int((cost - tokens) / refill_rate) + 1)
    return allowed, int(tokens), retry_after


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket limit shared through Redis, per process without it.

    Returns ``(allowed, remaining, retry_after_seconds)``. A Redis error
    falls back to the per-process bucket rather than failing the request.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    cost = max(1, cost)
    if runtime.cache is not None:
        try:
            return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
        except Exception as exc:
            logger.warning(
                "rate_limit_cache_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
    return _local_rate_limit(runtime, key, limit, window_seconds, cost)
