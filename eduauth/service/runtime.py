from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from eduauth.config import get_settings, reset_settings_cache
from eduauth.logging import get_logger
from eduauth.service.accounts import AccountDirectory
from eduauth.service.auth import AuthService
from eduauth.service.background import BackgroundRunner
from eduauth.service.email import EmailService
from eduauth.service.notifications import NotificationService
from eduauth.service.oauth import OAuthService
from eduauth.service.rate_limit import RateLimiter
from eduauth.service.sessions import SessionRegistry
from eduauth.service.tokens import TokenManager
from eduauth.service.uploads import ImageStore
from eduauth.service.verification import VerificationService
from eduauth.storage.memory import MemoryStore
from eduauth.storage.memory_cache import MemoryCache
from eduauth.storage.postgres import PostgresStore
from eduauth.storage.redis_cache import CACHE_ERRORS, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
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
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Explicitly wired service graph for the FastAPI app.

    Every service receives its store, cache and collaborators through its
    constructor; tests build the same graph over ``MemoryStore`` and
    ``MemoryCache``.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    connect_timeout=self.settings.outbound_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._connect_cache()
        self.background = BackgroundRunner()
        self.tokens = TokenManager(self.settings)
        self.limiter = RateLimiter(self.cache)
        self.verification = VerificationService(self.cache, self.settings)
        self.sessions = SessionRegistry(self.store, self.cache, self.tokens, self.settings)
        self.accounts = AccountDirectory(self.store, self.cache, self.settings, self.background)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
            timeout_seconds=self.settings.outbound_timeout_seconds,
        )
        self.notifications = NotificationService(self.store, self.email)
        self.images = ImageStore(
            self.settings.shared_fs_root, max_bytes=self.settings.max_upload_bytes
        )
        self.oauth = OAuthService(
            self.store, self.cache, self.settings, self.accounts, self.sessions
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            accounts=self.accounts,
            sessions=self.sessions,
            verification=self.verification,
            limiter=self.limiter,
            email=self.email,
            notifications=self.notifications,
            images=self.images,
            background=self.background,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _connect_cache(self) -> RedisCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            timeout = self.settings.redis_socket_timeout_seconds
            try:
                # Sync client in test mode so per-test event loops never bind it
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url, socket_timeout=timeout)
                else:
                    cache = RedisCache(self.settings.redis_url, socket_timeout=timeout)
                cache.verify_connection()
                return cache
            except CACHE_ERRORS as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, verification codes and token revocation; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, codes and the "
                "revocation list are held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def aclose(self) -> None:
        await self.background.drain()
        try:
            await self.cache.close()
        except CACHE_ERRORS as exc:
            logger.warning("cache_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        if runtime is not None:
            cache = runtime.cache
            try:
                if isinstance(cache, SyncRedisCache):
                    cache._sync_client.close()
                elif not isinstance(cache, MemoryCache):
                    asyncio.run(cache.close())
            except CACHE_ERRORS as exc:
                logger.warning("cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
