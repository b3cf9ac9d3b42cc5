from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authsession.logging import get_logger
from authsession.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
)
from authsession.storage.errors import ConstraintViolation, RecordNotFound
from authsession.storage.models import (
    AuthProvider,
    DeviceInfo,
    PasswordResetToken,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory record store for users, sessions and reset tokens.

    Every operation runs under one re-entrant lock so each call is atomic per
    record. Two-factor secrets are Fernet-encrypted at rest and decrypted on
    the copies handed back to callers.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authsession",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: List[PasswordResetToken] = []
        # RLock so helpers may re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)

        if self.persist and self._load_state():
            self.logger.info(
                "memory_store_loaded",
                users=len(self.users),
                sessions=len(self.sessions),
            )

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        password_hash: str = "",
        provider: AuthProvider = AuthProvider.EMAIL,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                password_hash=password_hash,
                provider=AuthProvider(provider),
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._public_user(user) if user else None

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime | None = None
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            now = changed_at or utcnow()
            user.password_hash = password_hash
            user.password_changed_at = now
            user.updated_at = now
            self._persist_state()
            return self._public_user(user)

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> User:
        """Store the secret and flag together; ``secret=None`` wipes it."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found for 2fa", {"user_id": user_id})
            user.two_factor_secret = encrypt_secret(self._mfa_cipher, secret)
            user.two_factor_enabled = enabled
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def _public_user(self, user: User) -> User:
        return replace(
            user, two_factor_secret=decrypt_secret(self._mfa_cipher, user.two_factor_secret)
        )

    @staticmethod
    def _public_session(sess: Session) -> Session:
        return replace(sess, device=replace(sess.device))

    # sessions
    def create_session(
        self,
        user_id: str,
        device: DeviceInfo | None = None,
        *,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id, device, user_agent, remember_me=remember_me
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return self._public_session(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return self._public_session(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [self._public_session(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def set_session_refresh_hash(self, session_id: str, refresh_hash: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.refresh_token_hash = refresh_hash
            self._persist_state()
            return True

    def replace_refresh_token_hash(
        self, session_id: str, expected_hash: str, new_hash: str
    ) -> bool:
        """Swap the refresh hash only if it still equals ``expected_hash``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.refresh_token_hash != expected_hash:
                return False
            sess.refresh_token_hash = new_hash
            sess.last_active = utcnow()
            self._persist_state()
            return True

    def touch_session(self, session_id: str, when: datetime | None = None) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_active = when or utcnow()
            self._persist_state()

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(
        self, user_id: str, except_session_id: str | None = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset tokens
    def create_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            record = PasswordResetToken(
                email=email, token_hash=token_hash, expires_at=expires_at
            )
            self.reset_tokens.append(record)
            self._persist_state()
            return record

    def consume_reset_token(
        self, email: str, token_hash: str, now: datetime | None = None
    ) -> Optional[PasswordResetToken]:
        """Remove and return the live matching token; only one caller gets it."""
        now = now or utcnow()
        with self._data_lock:
            for index, token in enumerate(self.reset_tokens):
                if token.email == email and token.token_hash == token_hash and token.is_live(now):
                    del self.reset_tokens[index]
                    self._persist_state()
                    return token
            return None

    def delete_reset_tokens(self, email: str) -> int:
        with self._data_lock:
            before = len(self.reset_tokens)
            self.reset_tokens = [t for t in self.reset_tokens if t.email != email]
            removed = before - len(self.reset_tokens)
            if removed:
                self._persist_state()
            return removed

    # persistence
    @staticmethod
    def _serialize_datetime(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.reset_tokens = [
            self._deserialize_reset_token(t) for t in data.get("reset_tokens", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        # two_factor_secret is already ciphertext here
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "password_hash": user.password_hash,
            "provider": user.provider.value,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": user.two_factor_secret,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data.get("password_hash", ""),
            provider=AuthProvider(data.get("provider", AuthProvider.EMAIL.value)),
            two_factor_enabled=bool(data.get("two_factor_enabled")),
            two_factor_secret=data.get("two_factor_secret"),
            password_changed_at=self._deserialize_datetime(
                data.get("password_changed_at")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "last_active": self._serialize_datetime(sess.last_active),
            "device": asdict(sess.device),
            "user_agent": sess.user_agent,
            "refresh_token_hash": sess.refresh_token_hash,
            "remember_me": sess.remember_me,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_active=self._deserialize_datetime(data["last_active"]),
            device=DeviceInfo(**(data.get("device") or {})),
            user_agent=data.get("user_agent"),
            refresh_token_hash=data.get("refresh_token_hash", ""),
            remember_me=bool(data.get("remember_me")),
        )

    def _serialize_reset_token(self, token: PasswordResetToken) -> dict:
        return {
            "email": token.email,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            email=data["email"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
