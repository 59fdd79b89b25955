from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from kalibro.config import get_settings, reset_settings_cache
from kalibro.logging import get_logger
from kalibro.service.auth import AuthService
from kalibro.service.email import EmailService
from kalibro.storage.accounts import MemoryAccountStore
from kalibro.storage.kv import MemoryKeyValueStore, RedisKeyValueStore
from kalibro.storage.postgres import PostgresAccountStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
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
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
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
            self.accounts: Union[MemoryAccountStore, PostgresAccountStore] = (
                MemoryAccountStore()
                if self.settings.use_memory_store
                else PostgresAccountStore(self.settings.database_url)
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

        self.kv = self._build_kv()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            dev_mode=self.settings.test_mode or self.settings.email_dev_mode,
        )
        self.auth = AuthService(self.accounts, self.kv, self.settings, mailer=self.email)

        logger.info(
            "runtime_initialized",
            kv_backend=type(self.kv).__name__,
            redis_enabled=isinstance(self.kv, RedisKeyValueStore) and self.kv.is_configured,
            email_configured=self.email.is_configured,
        )

    def _build_kv(self) -> Union[RedisKeyValueStore, MemoryKeyValueStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            kv = RedisKeyValueStore(self.settings.redis_url)
            try:
                kv.verify_connection()
                return kv
            except Exception as exc:
                redis_error = exc

        fallback_allowed = self.settings.test_mode or self.settings.allow_redis_fallback_dev
        if redis_error is not None and not fallback_allowed:
            raise RuntimeError(
                "Redis is required for sessions, token revocation, OTPs and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        if fallback_allowed:
            mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {mode}; sessions, revocations, OTPs "
                    "and rate limits live in process memory only."
                ),
                mode=mode,
            )
            return MemoryKeyValueStore()

        # No URL at all: every key-value call degrades to an absent value
        logger.warning(
            "redis_not_configured",
            message="REDIS_URL is empty; sessions and token revocation are disabled.",
        )
        return RedisKeyValueStore(None)

    async def close(self) -> None:
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None and isinstance(runtime.kv, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
