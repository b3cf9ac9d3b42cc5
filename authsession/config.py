from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authsession.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/authsession"


class Environment(str, Enum):
    """Deployment environment; production turns on Secure cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Secrets live under SHARED_FS_ROOT so tokens stay valid across restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

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
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service, read from env and .env."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    api_prefix: str = env_field("/api/v1/user", "API_PREFIX")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/authsession", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client IP from the first X-Forwarded-For hop",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token settings
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    two_factor_secret: str = env_field(
        None, "TWO_FACTOR_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("authsession", "JWT_ISSUER")
    jwt_audience: str = env_field("authsession-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    two_factor_token_ttl_minutes: int = env_field(5, "TWO_FACTOR_TOKEN_TTL_MINUTES")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    rotate_refresh_tokens: bool = env_field(True, "ROTATE_REFRESH_TOKENS")
    remember_me_days: int = env_field(30, "REMEMBER_ME_DAYS")

    # Two-factor settings
    totp_issuer: str = env_field("AuthSession", "TOTP_ISSUER")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Password reset
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")

    # Rate limits: requests per window for each endpoint class
    rate_limit_global: int = env_field(200, "RATE_LIMIT_GLOBAL")
    rate_limit_global_window_seconds: int = env_field(60, "RATE_LIMIT_GLOBAL_WINDOW_SECONDS")
    rate_limit_login: int = env_field(5, "RATE_LIMIT_LOGIN")
    rate_limit_login_window_seconds: int = env_field(60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_password_reset: int = env_field(3, "RATE_LIMIT_PASSWORD_RESET")
    rate_limit_password_reset_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS"
    )
    rate_limit_oauth: int = env_field(10, "RATE_LIMIT_OAUTH")
    rate_limit_oauth_window_seconds: int = env_field(10 * 60, "RATE_LIMIT_OAUTH_WINDOW_SECONDS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_base_url: str = env_field(
        "http://localhost:8000", "OAUTH_REDIRECT_BASE_URL"
    )

    # Device facts
    geolocation_enabled: bool = env_field(
        False,
        "GEOLOCATION_ENABLED",
        description="Resolve session locations through the ip-api.com lookup",
    )
    geolocation_timeout_seconds: float = env_field(2.0, "GEOLOCATION_TIMEOUT_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthSession", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def secure_cookies(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return "" if value == "/" else value

    @field_validator("frontend_url", "oauth_redirect_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("two_factor_secret")
    @classmethod
    def _ensure_two_factor_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".two_factor_secret")


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
