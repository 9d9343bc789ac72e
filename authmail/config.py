from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authmail.logging import get_logger

logger = get_logger(__name__)

DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str) -> str:
    """Load or create a random secret under SHARED_FS_ROOT so tokens survive restarts."""
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authmail"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    app_name: str = env_field("AuthMail", "APP_NAME")
    database_url: str = env_field("postgresql://localhost:5432/authmail", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authmail", "SHARED_FS_ROOT")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory cache, resettable runtime).",
    )

    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authmail", "JWT_ISSUER")
    jwt_audience: str = env_field("authmail-clients", "JWT_AUDIENCE")
    jwt_expires_in: str = env_field("15m", "JWT_EXPIRES_IN", description="Access token lifetime, <int><s|m|h|d>")
    jwt_refresh_expires_in: str = env_field(
        "7d", "JWT_REFRESH_EXPIRES_IN", description="Refresh token lifetime, <int><s|m|h|d>"
    )

    # Login lockout and onboarding codes
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lock_minutes: int = env_field(30, "LOGIN_LOCK_MINUTES")
    verification_code_ttl_seconds: int = env_field(15 * 60, "VERIFICATION_CODE_TTL_SECONDS")
    reset_code_ttl_seconds: int = env_field(15 * 60, "RESET_CODE_TTL_SECONDS")
    auth_rate_limit_per_minute: int = env_field(10, "AUTH_RATE_LIMIT_PER_MINUTE")

    # Email transport
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthMail", "EMAIL_FROM_NAME")

    # Mail queue worker
    mail_worker_enabled: bool = env_field(True, "MAIL_WORKER_ENABLED")
    mail_poll_interval_seconds: float = env_field(1.0, "MAIL_POLL_INTERVAL_SECONDS")
    mail_rate_limit_max: int = env_field(1, "MAIL_RATE_LIMIT_MAX")
    mail_rate_limit_window_ms: int = env_field(1000, "MAIL_RATE_LIMIT_WINDOW_MS")
    mail_default_attempts: int = env_field(3, "MAIL_DEFAULT_ATTEMPTS")
    mail_backoff_base_seconds: float = env_field(5.0, "MAIL_BACKOFF_BASE_SECONDS")
    token_cleanup_interval_seconds: int = env_field(
        60 * 60,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        description="How often expired refresh tokens are purged; 0 disables",
    )

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

    @field_validator("jwt_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        value = (value or "").strip()
        if not DURATION_PATTERN.match(value):
            raise ValueError(f"invalid duration {value!r}, expected <int><s|m|h|d>")
        return value

    @field_validator("login_max_attempts", "login_lock_minutes", "mail_rate_limit_max", "mail_default_attempts")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
