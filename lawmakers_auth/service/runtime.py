from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from lawmakers_auth.config import get_settings, reset_settings_cache
from lawmakers_auth.logging import get_logger
from lawmakers_auth.service.auth import AuthService
from lawmakers_auth.service.email import EmailService
from lawmakers_auth.service.passwords import PasswordHasher
from lawmakers_auth.service.rate_limit import RateLimiter
from lawmakers_auth.service.tokens import TokenService
from lawmakers_auth.storage.memory import MemoryStore
from lawmakers_auth.storage.postgres import PostgresStore
from lawmakers_auth.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
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

        self.cache = self._build_cache()

        self.passwords = PasswordHasher(
            self.settings.password_scheme,
            pbkdf2_iterations=self.settings.pbkdf2_iterations,
        )
        self.tokens = TokenService(self.cache, self.settings)
        self.rate_limiter = RateLimiter.from_settings(self.cache, self.settings)
        self.email = EmailService(
            api_key=self.settings.mail_api_key,
            api_url=self.settings.mail_api_url,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            app_origin=self.settings.app_origin,
            timeout=self.settings.mail_timeout_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.passwords,
            self.email,
            self.settings,
        )

        if self.settings.dev_auto_verify and not self.settings.auto_verify_enabled:
            logger.warning(
                "dev_auto_verify_ignored",
                app_origin=self.settings.app_origin,
                message="DEV_AUTO_VERIFY only applies when APP_ORIGIN is a localhost origin",
            )

        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
            password_scheme=self.settings.password_scheme.value,
            auto_verify=self.settings.auto_verify_enabled,
        )

    def _build_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to the test client's loops
                if self.settings.test_mode:
                    cache: Cache = SyncRedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for verify tokens, refresh tokens and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; tokens and rate limits "
                "live in this process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        if runtime is not None and isinstance(runtime.cache, (SyncRedisCache, MemoryCache)):
            # both close synchronously under the hood
            asyncio.run(runtime.cache.close())
        runtime = Runtime()
        return runtime
