from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide auth settings, built once at startup and never mutated."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-memory fallbacks, runtime resets).",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single store call before it surfaces as a transient failure",
    )

    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")

    # Token TTL policy
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REMEMBER_ME_REFRESH_TTL_MINUTES",
        description="Refresh TTL for logins that ask to stay signed in",
    )
    admin_refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "ADMIN_REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh TTL for admin and system admin sessions",
    )
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Password hashing cost
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Flow policy
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    allow_system_admin_signup: bool = env_field(
        False,
        "ALLOW_SYSTEM_ADMIN_SIGNUP",
        description="Allow public system admin join; scripts/bootstrap_system_admin.py is preferred",
    )
    require_verified_email_for_login: bool = env_field(
        False, "REQUIRE_VERIFIED_EMAIL_FOR_LOGIN"
    )
    revoke_sessions_on_password_reset: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_RESET"
    )
    revoke_sessions_on_password_change: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_CHANGE"
    )

    # Seeds for the default rate-limit policies
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    login_ip_rate_limit_per_minute: int = env_field(30, "LOGIN_IP_RATE_LIMIT_PER_MINUTE")
    join_rate_limit_per_minute: int = env_field(5, "JOIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_hour: int = env_field(5, "RESET_RATE_LIMIT_PER_HOUR")
    verification_rate_limit_per_hour: int = env_field(
        5, "VERIFICATION_RATE_LIMIT_PER_HOUR"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authkernel", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "remember_me_refresh_ttl_minutes",
        "admin_refresh_token_ttl_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @model_validator(mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("jwt_secret"):
            return data
        fs_root = Path(data.get("shared_fs_root") or "/srv/authkernel")
        return {**data, "jwt_secret": _load_or_create_secret(fs_root)}

    @field_validator("jwt_secret")
    @classmethod
    def _secret_strength(cls, value: str) -> str:
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters")
        return value


def _load_or_create_secret(fs_root: Path) -> str:
    """Read the persisted signing secret, generating it on first start.

    Raises RuntimeError when no secret can be read or written: without a
    signing key the process cannot serve auth at all.
    """

    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
