from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authsession.logging import get_logger
from authsession.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    WrongProviderError,
)
from authsession.service.sessions import AuthStore
from authsession.storage.errors import ConstraintViolation
from authsession.storage.models import AuthProvider, User, utcnow

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class Argon2PasswordHasher:
    """argon2id hashing; ``verify`` never raises on a bad or foreign digest."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


class CredentialVerifier:
    """Email/password checks for register, login and password change."""

    def __init__(self, store: AuthStore, hasher: Argon2PasswordHasher | None = None):
        self.store = store
        self.hasher = hasher or Argon2PasswordHasher()

    def register(
        self, email: str, password: str, *, first_name: str = "", last_name: str = ""
    ) -> User:
        """Create an email-provider account.

        Raises:
            ConflictError: An account with this email already exists
        """
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("User with Email Already exist.")
        try:
            user = self.store.create_user(
                email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                password_hash=self.hasher.hash(password),
                provider=AuthProvider.EMAIL,
            )
        except ConstraintViolation as exc:
            # Concurrent registration won the unique index
            raise ConflictError("User with Email Already exist.") from exc
        logger.info("user_registered", user_id=user.id)
        return user

    def verify(self, email: str, password: str) -> User:
        """Check an email/password pair and return the user.

        Read-only. Failures are checked in order: missing account, wrong
        provider, wrong password.

        Raises:
            NotFoundError: No account for this email
            WrongProviderError: Account signs in through OAuth
            InvalidCredentialsError: Password does not match
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise NotFoundError("User does not exist.")
        if user.provider != AuthProvider.EMAIL:
            raise WrongProviderError(user.provider.value)
        if not self.hasher.verify(password, user.password_hash):
            logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentialsError("Incorrect password.")
        return user

    def change_password(self, user_id: str, current: str, new: str) -> int:
        """Replace the password and revoke every session of the user.

        Returns the number of sessions deleted.

        Raises:
            NotFoundError: User vanished
            WrongProviderError: Account has no password to change
            InvalidCredentialsError: ``current`` is wrong
        """
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User does not exist.")
        if user.provider != AuthProvider.EMAIL:
            raise WrongProviderError(user.provider.value)
        if not self.hasher.verify(current, user.password_hash):
            raise InvalidCredentialsError("Incorrect password.")
        self.store.update_password(user.id, self.hasher.hash(new), utcnow())
        removed = self.store.delete_user_sessions(user.id)
        logger.info("password_changed", user_id=user.id, sessions_revoked=removed)
        return removed
