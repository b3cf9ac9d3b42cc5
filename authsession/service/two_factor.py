from __future__ import annotations

import base64
import hashlib
import hmac
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import (
    ConflictError,
    InvalidCodeError,
    InvalidTempTokenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    ValidationError,
)
from authsession.service.sessions import AuthStore
from authsession.service.tokens import TokenIssuer, TokenKind
from authsession.storage.models import User
from authsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_secret() -> str:
    """Random base32 TOTP secret from 20 bytes (160 bits, RFC 4226 size)."""
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1, as authenticator apps expect)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    now: Optional[float] = None,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept ``code`` for the current step or ``window`` adjacent steps."""
    if not secret or not code:
        return False
    code = code.strip().replace(" ", "")
    if not code.isdigit():
        return False
    ts = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, ts + offset * interval, interval=interval)
        # Constant-time compare
        if generated and hmac.compare_digest(generated.encode(), code.encode()):
            return True
    return False


class TwoFactorGate:
    """TOTP enrollment and the second login step.

    Failed codes during login count toward a lockout held in Redis when
    available, otherwise in this process under a lock.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}  # user_id -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # user_id -> locked_until

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def otpauth_url(self, user: User, secret: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{user.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def provision(self, user_id: str) -> dict[str, str]:
        """Generate an unsaved secret for the user to load into an authenticator.

        Nothing is persisted until ``confirm_enable`` proves the user holds it.
        """
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User does not exist.")
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        secret = generate_secret()
        return {"secret": secret, "otpauth_url": self.otpauth_url(user, secret)}

    def confirm_enable(self, user_id: str, code: str, secret: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User does not exist.")
        if not verify_totp(secret, code, now=self._clock()):
            raise InvalidCodeError("Invalid 2FA code")
        # Secret and flag land in one store call
        updated = self.store.set_two_factor(user.id, secret, True)
        logger.info("two_factor_enabled", user_id=user.id)
        return updated

    def disable(self, user_id: str) -> User:
        updated = self.store.set_two_factor(user_id, None, False)
        logger.info("two_factor_disabled", user_id=user_id)
        return updated

    async def check_code(self, user: User, code: str) -> None:
        """Validate a code against the stored secret, counting failures.

        Raises:
            ValidationError: 2FA is not enabled for the user
            RateLimitedError: Too many recent failures
            InvalidCodeError: Code did not match
        """
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise ValidationError("Two-factor authentication is not enabled")
        await self._ensure_not_locked(user.id)
        if not verify_totp(user.two_factor_secret, code, now=self._clock()):
            await self._record_failure(user.id)
            raise InvalidCodeError("Invalid 2FA code")
        await self._clear_failures(user.id)

    async def verify_during_login(self, temp_token: str, code: str) -> User:
        """Second login step: temp token plus a current code yields the user.

        Raises:
            InvalidTempTokenError: Temp token expired or tampered
            ValidationError: 2FA is not enabled for the user
            RateLimitedError: Too many recent failures
            InvalidCodeError: Code did not match
        """
        try:
            claims = self.tokens.verify(TokenKind.TWO_FACTOR, temp_token)
        except (TokenExpiredError, InvalidTokenError) as exc:
            raise InvalidTempTokenError(
                "Two-factor session expired. Please log in again."
            ) from exc
        user = self.store.get_user(claims.get("sub", ""))
        if not user:
            raise InvalidTempTokenError("Two-factor session expired. Please log in again.")
        await self.check_code(user, code)
        logger.info("two_factor_login_verified", user_id=user.id)
        return user

    async def _ensure_not_locked(self, user_id: str) -> None:
        retry_after = self.settings.two_factor_lockout_seconds
        if self.cache:
            if await self.cache.check_mfa_lockout(user_id):
                logger.warning("two_factor_locked_out", user_id=user_id)
                raise RateLimitedError(
                    "Too many failed attempts. Try again later.", retry_after=retry_after
                )
            return
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                logger.warning("two_factor_locked_out", user_id=user_id)
                raise RateLimitedError(
                    "Too many failed attempts. Try again later.",
                    retry_after=max(1, int((locked_until - now).total_seconds())),
                )
            if locked_until:
                self._lockouts.pop(user_id, None)

    async def _record_failure(self, user_id: str) -> None:
        max_attempts = self.settings.two_factor_max_attempts
        lockout = self.settings.two_factor_lockout_seconds
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout
            )
            if is_locked and attempts >= 0:
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = self._now()
        window = timedelta(seconds=lockout)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)
