from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authsession.config import get_settings, reset_settings_cache
from authsession.logging import get_logger
from authsession.service.credentials import Argon2PasswordHasher, CredentialVerifier
from authsession.service.device import IPLocator
from authsession.service.email import EmailService
from authsession.service.oauth import OAuthFlow, OAuthLinker, build_providers
from authsession.service.password_reset import PasswordResetFlow
from authsession.service.rate_limit import RateLimiter
from authsession.service.sessions import AuthStore, SessionRegistry
from authsession.service.tokens import TokenIssuer
from authsession.service.two_factor import TwoFactorGate
from authsession.storage.memory import MemoryStore
from authsession.storage.postgres import PostgresStore
from authsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

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
        mfa_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        try:
            self.store: AuthStore = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                    persist=self.settings.persist_memory_store and not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, OAuth state and 2FA lockout; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        hasher = Argon2PasswordHasher()
        self.tokens = TokenIssuer(self.settings)
        self.sessions = SessionRegistry(self.store, self.tokens, self.settings)
        self.credentials = CredentialVerifier(self.store, hasher)
        self.two_factor = TwoFactorGate(
            self.store, self.tokens, self.settings, cache=self.cache
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.password_reset = PasswordResetFlow(self.store, self.email, self.settings, hasher)
        self.oauth = OAuthFlow(
            build_providers(self.settings),
            OAuthLinker(self.store),
            self.settings,
            cache=self.cache,
        )
        self.rate_limiter = RateLimiter(self.settings, cache=self.cache)
        self.locator: Optional[IPLocator] = (
            IPLocator(timeout=self.settings.geolocation_timeout_seconds)
            if self.settings.geolocation_enabled
            else None
        )

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            geolocation_enabled=self.locator is not None,
            oauth_providers=[
                name for name, provider in self.oauth.providers.items() if provider.configured
            ],
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked fast path serves an existing
    runtime; the locked path prevents two threads building one each.
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
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
