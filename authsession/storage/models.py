from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    """How an account authenticates; fixed when the account is created."""

    EMAIL = "email"
    GOOGLE = "google"
    GITHUB = "github"


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    # Empty for OAuth-only accounts
    password_hash: str = ""
    provider: AuthProvider = AuthProvider.EMAIL
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device_type: str = "Desktop"
    ip_address: str = ""
    location: str = "Unknown"


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_active: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)
    user_agent: Optional[str] = None
    # sha256 of the refresh token currently bound to this session
    refresh_token_hash: str = ""
    remember_me: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        device: DeviceInfo | None = None,
        user_agent: str | None = None,
        *,
        remember_me: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_active=now,
            device=device or DeviceInfo(),
            user_agent=user_agent,
            remember_me=remember_me,
        )


@dataclass
class PasswordResetToken:
    email: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: datetime) -> bool:
        return self.expires_at >= now
