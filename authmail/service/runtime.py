from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from authmail.config import get_settings, reset_settings_cache
from authmail.logging import get_logger
from authmail.service.auth import AuthService
from authmail.service.email import EmailService
from authmail.service.mail_queue import MailQueue
from authmail.service.mail_worker import MailWorker
from authmail.service.notifications import NotificationDispatcher
from authmail.service.signer import TokenSigner
from authmail.service.tokens import RefreshTokenLedger
from authmail.storage.memory import MemoryStore
from authmail.storage.postgres import PostgresStore
from authmail.storage.redis_cache import MemoryCache, RedisCache

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
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

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
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._init_cache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.mail_queue = MailQueue(
            self.store,
            default_attempts=self.settings.mail_default_attempts,
            backoff_base_seconds=self.settings.mail_backoff_base_seconds,
        )
        self.notifications = NotificationDispatcher(self.mail_queue, self.email, self.settings)
        self.mail_worker = MailWorker(
            self.mail_queue,
            self.email,
            poll_interval=self.settings.mail_poll_interval_seconds,
            rate_limit_max=self.settings.mail_rate_limit_max,
            rate_limit_window_ms=self.settings.mail_rate_limit_window_ms,
        )
        self.ledger = RefreshTokenLedger(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            self.notifications,
            ledger=self.ledger,
            signer=TokenSigner(self.settings.jwt_issuer, self.settings.jwt_audience),
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            email_configured=self.email.is_configured,
            mail_worker_enabled=self.settings.mail_worker_enabled,
        )

    def _init_cache(self) -> Union[RedisCache, MemoryCache]:
        if self.settings.test_mode:
            return MemoryCache()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for verification codes and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                "Running without Redis under ALLOW_REDIS_FALLBACK_DEV; verification codes "
                "and rate limits are in-memory only."
            ),
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.mail_worker.stop()
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by the runtime cache.

    A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )


async def run_token_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Periodically purge expired refresh tokens until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime.ledger.delete_expired_tokens()
        except Exception as exc:
            logger.error("token_cleanup_failed", error_type=type(exc).__name__, error=str(exc))
