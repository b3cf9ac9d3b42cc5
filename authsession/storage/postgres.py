from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authsession.logging import get_logger
from authsession.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    safe_row_value,
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

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL DEFAULT 'email',
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret TEXT,
    password_changed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS auth_session (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_active TIMESTAMPTZ NOT NULL DEFAULT now(),
    browser TEXT,
    os TEXT,
    device_type TEXT,
    ip_address TEXT,
    location TEXT,
    user_agent TEXT,
    refresh_token_hash TEXT NOT NULL DEFAULT '',
    remember_me BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id);

CREATE TABLE IF NOT EXISTS password_reset_token (
    id BIGSERIAL PRIMARY KEY,
    email TEXT NOT NULL,
    token_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS password_reset_email_idx ON password_reset_token (email);
"""


class PostgresStore:
    """Postgres-backed record store; each operation is a single statement."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str | None = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_schema_ready")

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _uuid_or_none(value: str) -> Optional[uuid.UUID]:
        """Ids that cannot be a UUID match no row; the column type would reject them."""
        try:
            return uuid.UUID(str(value))
        except ValueError:
            return None

    # row mapping
    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=safe_row_value(row, "first_name", ""),
            last_name=safe_row_value(row, "last_name", ""),
            password_hash=safe_row_value(row, "password_hash", ""),
            provider=AuthProvider(safe_row_value(row, "provider", "email")),
            two_factor_enabled=bool(safe_row_value(row, "two_factor_enabled", False)),
            two_factor_secret=decrypt_secret(
                self._mfa_cipher, safe_row_value(row, "two_factor_secret")
            ),
            password_changed_at=safe_row_value(row, "password_changed_at"),
            created_at=safe_row_value(row, "created_at", utcnow()),
            updated_at=safe_row_value(row, "updated_at", utcnow()),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        device = DeviceInfo(
            browser=safe_row_value(row, "browser", "Unknown"),
            os=safe_row_value(row, "os", "Unknown"),
            device_type=safe_row_value(row, "device_type", "Desktop"),
            ip_address=safe_row_value(row, "ip_address", ""),
            location=safe_row_value(row, "location", "Unknown"),
        )
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=safe_row_value(row, "created_at", utcnow()),
            last_active=safe_row_value(row, "last_active", utcnow()),
            device=device,
            user_agent=safe_row_value(row, "user_agent"),
            refresh_token_hash=safe_row_value(row, "refresh_token_hash", ""),
            remember_me=bool(safe_row_value(row, "remember_me", False)),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, password_hash, provider)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        password_hash,
                        AuthProvider(provider).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, changed_at: datetime | None = None
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_changed_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, changed_at or utcnow(), user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._row_to_user(row)

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (encrypt_secret(self._mfa_cipher, secret), enabled, user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found for 2fa", {"user_id": user_id})
        return self._row_to_user(row)

    # sessions
    def create_session(
        self,
        user_id: str,
        device: DeviceInfo | None = None,
        *,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> Session:
        sess = Session.new(user_id, device, user_agent, remember_me=remember_me)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, created_at, last_active, browser, os, device_type,
                        ip_address, location, user_agent, refresh_token_hash, remember_me
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.last_active,
                        sess.device.browser,
                        sess.device.os,
                        sess.device.device_type,
                        sess.device.ip_address,
                        sess.device.location,
                        user_agent,
                        sess.refresh_token_hash,
                        remember_me,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        if self._uuid_or_none(session_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def set_session_refresh_hash(self, session_id: str, refresh_hash: str) -> bool:
        if self._uuid_or_none(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET refresh_token_hash = %s WHERE id = %s",
                (refresh_hash, session_id),
            )
            return result.rowcount > 0

    def replace_refresh_token_hash(
        self, session_id: str, expected_hash: str, new_hash: str
    ) -> bool:
        """Compare-and-swap the refresh hash; only one concurrent caller wins."""
        if self._uuid_or_none(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, last_active = now()
                WHERE id = %s AND refresh_token_hash = %s
                """,
                (new_hash, session_id, expected_hash),
            )
            return result.rowcount > 0

    def touch_session(self, session_id: str, when: datetime | None = None) -> None:
        if self._uuid_or_none(session_id) is None:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_active = %s WHERE id = %s",
                (when or utcnow(), session_id),
            )

    def delete_session(self, session_id: str) -> bool:
        if self._uuid_or_none(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, except_session_id: str | None = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    # password reset tokens
    def create_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(email=email, token_hash=token_hash, expires_at=expires_at)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (email, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (email, token_hash, expires_at, record.created_at),
            )
        return record

    def consume_reset_token(
        self, email: str, token_hash: str, now: datetime | None = None
    ) -> Optional[PasswordResetToken]:
        """Delete the live matching token in one statement; concurrent callers get at most one row."""
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE email = %s AND token_hash = %s AND expires_at >= %s
                RETURNING email, token_hash, expires_at, created_at
                """,
                (email, token_hash, now or utcnow()),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            email=row["email"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_reset_tokens(self, email: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE email = %s", (email,)
            )
            return result.rowcount
