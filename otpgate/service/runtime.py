from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from otpgate.config import get_settings, reset_settings_cache
from otpgate.logging import get_logger
from otpgate.service.auth import AuthService
from otpgate.service.challenges import OtpChallengeManager
from otpgate.service.email import EmailService
from otpgate.service.hashing import SecretHasher
from otpgate.service.notifier import OtpNotifier
from otpgate.service.sessions import SessionManager
from otpgate.service.sms import SmsService
from otpgate.storage.memory import MemoryCache, MemoryStore
from otpgate.storage.postgres import PostgresStore
from otpgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
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
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances wired from settings."""

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

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for OTP challenge contexts; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; OTP contexts are "
                    "process-local and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.hasher = SecretHasher(self.settings.token_hash_secret)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            app_name=self.settings.app_name,
            ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.sms = SmsService(
            base_url=self.settings.sms_base_url,
            access_token=self.settings.sms_access_token,
            sender=self.settings.sms_sender,
            country_prefix=self.settings.sms_country_prefix,
            timeout=self.settings.sms_timeout_seconds,
        )
        self.notifier = OtpNotifier(self.email, self.sms, app_name=self.settings.app_name)
        self.challenges = OtpChallengeManager(
            self.store,
            self.cache,
            self.hasher,
            self.notifier,
            ttl_minutes=self.settings.otp_ttl_minutes,
            max_attempts=self.settings.otp_max_attempts,
            code_length=self.settings.otp_code_length,
        )
        self.sessions = SessionManager(
            self.store,
            self.hasher,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_ttl_minutes,
            max_active_sessions=self.settings.max_active_sessions,
        )
        self.auth = AuthService(self.store, self.challenges, self.sessions, self.hasher)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, (RedisCache, SyncRedisCache)),
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# Close tasks scheduled on a running loop; held until they finish
_pending_closes: set[asyncio.Task] = set()


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
        if runtime is not None:
            cache = runtime.cache
            if isinstance(cache, SyncRedisCache):
                # Sync client underneath; close it directly
                cache._sync_client.close()
            elif isinstance(cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                    task = loop.create_task(cache.close())
                    _pending_closes.add(task)
                    task.add_done_callback(_pending_closes.discard)
                except RuntimeError:
                    asyncio.run(cache.close())
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
