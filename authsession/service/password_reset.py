from __future__ import annotations

import asyncio
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.credentials import Argon2PasswordHasher, normalize_email
from authsession.service.email import EmailService
from authsession.service.errors import InvalidOrExpiredTokenError
from authsession.service.sessions import AuthStore
from authsession.service.tokens import token_digest
from authsession.storage.models import AuthProvider, User, utcnow

logger = get_logger(__name__)


class PasswordResetFlow:
    """Single-use, time-limited password reset tokens.

    Only the sha256 digest of a token is stored. Issuing a token purges the
    earlier ones for that email, and a successful reset purges them all.
    """

    def __init__(
        self,
        store: AuthStore,
        email: EmailService,
        settings: Settings,
        hasher: Argon2PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.email = email
        self.settings = settings
        self.hasher = hasher or Argon2PasswordHasher()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.password_reset_ttl_minutes)

    def reset_link(self, email: str, raw_token: str) -> str:
        query = urlencode({"token": raw_token, "email": email})
        return f"{self.settings.frontend_url}/reset-password?{query}"

    async def request(self, email: str) -> Optional[str]:
        """Issue and mail a reset token when the account uses email sign-in.

        Unknown addresses and OAuth accounts get no token and no mail; the
        caller answers with the same generic success either way. Returns the
        raw token when one was issued.
        """
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user or user.provider != AuthProvider.EMAIL:
            logger.info(
                "password_reset_skipped",
                reason="unknown_account" if not user else "oauth_account",
            )
            return None

        raw_token = secrets.token_hex(32)
        self.store.delete_reset_tokens(email)
        self.store.create_reset_token(email, token_digest(raw_token), utcnow() + self.ttl)
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            email,
            user.full_name,
            self.reset_link(email, raw_token),
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return raw_token

    def reset(self, email: str, raw_token: str, new_password: str) -> User:
        """Consume a reset token and set the new password.

        The token is removed atomically before the new password is hashed,
        so concurrent submissions of one token succeed at most once. The
        remaining tokens for the email are then purged and every session of
        the user is deleted.

        Raises:
            InvalidOrExpiredTokenError: No live token matches (email, token)
        """
        email = normalize_email(email)
        record = self.store.consume_reset_token(email, token_digest(raw_token or ""), utcnow())
        user = self.store.get_user_by_email(email) if record else None
        if not record or not user:
            raise InvalidOrExpiredTokenError("Token invalid or expired")
        self.store.delete_reset_tokens(email)
        updated = self.store.update_password(user.id, self.hasher.hash(new_password), utcnow())
        revoked = self.store.delete_user_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return updated
