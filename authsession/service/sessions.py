from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import (
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    SessionRevokedError,
    TokenExpiredError,
)
from authsession.service.tokens import TokenIssuer, TokenKind, TokenPair, token_digest
from authsession.storage.models import (
    AuthProvider,
    DeviceInfo,
    PasswordResetToken,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

# last_active is written at most this often per session
_TOUCH_INTERVAL = timedelta(minutes=1)


class AuthStore(Protocol):
    def ping(self) -> bool: ...

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        password_hash: str = "",
        provider: AuthProvider = AuthProvider.EMAIL,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime | None = None
    ) -> User: ...

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> User: ...

    def create_session(
        self,
        user_id: str,
        device: DeviceInfo | None = None,
        *,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def set_session_refresh_hash(self, session_id: str, refresh_hash: str) -> bool: ...

    def replace_refresh_token_hash(
        self, session_id: str, expected_hash: str, new_hash: str
    ) -> bool: ...

    def touch_session(self, session_id: str, when: datetime | None = None) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, except_session_id: str | None = None
    ) -> int: ...

    def create_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def consume_reset_token(
        self, email: str, token_hash: str, now: datetime | None = None
    ) -> Optional[PasswordResetToken]: ...

    def delete_reset_tokens(self, email: str) -> int: ...


@dataclass
class Principal:
    """The authenticated caller: verified claims plus the live session row."""

    user: User
    session: Session
    claims: dict[str, Any]

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id


@dataclass
class SessionView:
    session: Session
    is_current: bool


class SessionRegistry:
    """Owns session rows and binds them to issued tokens.

    A token is honoured only while the session it names exists, so deleting a
    row revokes every access and refresh token minted for it.
    """

    def __init__(self, store: AuthStore, tokens: TokenIssuer, settings: Settings):
        self.store = store
        self.tokens = tokens
        self.settings = settings

    def create(
        self,
        user: User,
        device: DeviceInfo | None = None,
        *,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> Tuple[Session, TokenPair]:
        session = self.store.create_session(
            user.id, device, user_agent=user_agent, remember_me=remember_me
        )
        pair = self.tokens.issue_session_pair(user, session.id)
        refresh_hash = token_digest(pair.refresh_token)
        self.store.set_session_refresh_hash(session.id, refresh_hash)
        session.refresh_token_hash = refresh_hash
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            remember_me=remember_me,
            device_type=session.device.device_type,
        )
        return session, pair

    def find(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def terminate(self, session_id: str, requester_user_id: str) -> None:
        session = self.store.get_session(session_id)
        if not session or session.user_id != requester_user_id:
            raise NotFoundError("Session not found or unauthorized")
        self.store.delete_session(session_id)
        logger.info("session_terminated", user_id=requester_user_id, session_id=session_id)

    def terminate_all_except(self, user_id: str, keep_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id=keep_id)
        logger.info("other_sessions_terminated", user_id=user_id, count=removed)
        return removed

    def terminate_all(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("all_sessions_terminated", user_id=user_id, count=removed)
        return removed

    def list(self, user_id: str, current_session_id: Optional[str]) -> List[SessionView]:
        return [
            SessionView(session=s, is_current=s.id == current_session_id)
            for s in self.store.list_user_sessions(user_id)
        ]

    def authenticate(self, access_token: str) -> Principal:
        """Resolve an access token to its user and live session.

        Raises:
            TokenExpiredError: Token expired; the client should refresh
            InvalidTokenError: Token malformed, tampered, or not an access token
            SessionRevokedError: The named session no longer exists
        """
        claims = self.tokens.verify(TokenKind.ACCESS, access_token)
        session_id = claims.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if not session or session.user_id != claims.get("sub"):
            raise SessionRevokedError("Session has been revoked")
        user = self.store.get_user(session.user_id)
        if not user:
            raise SessionRevokedError("Session has been revoked")
        now = utcnow()
        if now - session.last_active >= _TOUCH_INTERVAL:
            self.store.touch_session(session.id, now)
            session.last_active = now
        return Principal(user=user, session=session, claims=claims)

    def rotate(self, refresh_token: str) -> Tuple[Session, TokenPair]:
        """Exchange a refresh token for a new access token (and refresh token).

        The stored refresh hash is swapped with a compare-and-swap, so of two
        concurrent rotations of the same token only one succeeds.

        Raises:
            InvalidRefreshTokenError: Token invalid, expired, or already rotated
            SessionRevokedError: The named session no longer exists
        """
        try:
            claims = self.tokens.verify(TokenKind.REFRESH, refresh_token)
        except (TokenExpiredError, InvalidTokenError) as exc:
            logger.info("refresh_token_rejected", reason=exc.error_code)
            raise InvalidRefreshTokenError("Invalid refresh token") from exc

        session_id = claims.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if not session or session.user_id != claims.get("sub"):
            raise SessionRevokedError("Session has been revoked")
        user = self.store.get_user(session.user_id)
        if not user:
            raise SessionRevokedError("Session has been revoked")

        presented_hash = token_digest(refresh_token)
        if session.refresh_token_hash != presented_hash:
            logger.warning("refresh_token_reuse", user_id=user.id, session_id=session.id)
            raise InvalidRefreshTokenError("Refresh token already used")

        if not self.settings.rotate_refresh_tokens:
            pair = self.tokens.issue_session_pair(user, session.id)
            pair.refresh_token = refresh_token
            pair.refresh_expires_at = datetime.fromtimestamp(
                float(claims["exp"]), tz=timezone.utc
            )
            self.store.touch_session(session.id)
            return session, pair

        pair = self.tokens.issue_session_pair(user, session.id)
        new_hash = token_digest(pair.refresh_token)
        if not self.store.replace_refresh_token_hash(session.id, presented_hash, new_hash):
            # Lost the race to a concurrent rotation, or the session vanished
            if not self.store.get_session(session.id):
                raise SessionRevokedError("Session has been revoked")
            raise InvalidRefreshTokenError("Refresh token already used")
        session.refresh_token_hash = new_hash
        logger.info("refresh_token_rotated", user_id=user.id, session_id=session.id)
        return session, pair
