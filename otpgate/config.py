from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP and session authority."""

    database_url: str = env_field("postgresql://localhost:5432/otpgate", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/otpgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the sync Redis client and allow in-memory fallbacks",
    )
    app_name: str = env_field("TRAVINHGO", "APP_NAME")

    # Secret used to key the deterministic hash of OTP codes and session tokens
    token_hash_secret: str | None = env_field(
        None, "TOKEN_HASH_SECRET", validate_default=True
    )

    # One-time codes
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(
        5,
        "OTP_MAX_ATTEMPTS",
        description="Wrong codes accepted before a challenge is exhausted",
    )
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH")

    # Sessions
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")
    refresh_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TTL_MINUTES")
    max_active_sessions: int = env_field(3, "MAX_ACTIVE_SESSIONS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TraVinhGo", "EMAIL_FROM_NAME")

    # SMS gateway
    sms_base_url: str = env_field("https://api.speedsms.vn/index.php", "SMS_BASE_URL")
    sms_access_token: str | None = env_field(None, "SMS_ACCESS_TOKEN")
    sms_sender: str | None = env_field(None, "SMS_SENDER")
    sms_country_prefix: str = env_field("84", "SMS_COUNTRY_PREFIX")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "otp_ttl_minutes",
        "otp_max_attempts",
        "otp_code_length",
        "session_ttl_minutes",
        "refresh_ttl_minutes",
        "max_active_sessions",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("otp_code_length")
    @classmethod
    def _code_length_bounds(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_code_length must be between 4 and 10")
        return value

    @field_validator("token_hash_secret")
    @classmethod
    def _ensure_token_hash_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("TOKEN_HASH_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so stored hashes stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/otpgate"))
        secret_path = fs_root / ".token_hash_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_hash_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token hash secret; set TOKEN_HASH_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
