from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authsession.storage.models import Session, User


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width characters
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "invalid_token",
    "session_revoked",
    "invalid_code",
    "forbidden",
    "wrong_provider",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(
        ...,
        description="Stable error code clients can branch on",
    )
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        raise ValueError("Email is required")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email format")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    value = value.strip()
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    return value


def _require_non_blank(value: str, label: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{label} is required")
    return value


class RegisterRequest(BaseModel):
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    email: str
    password: str

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: str) -> str:
        return _require_non_blank(value, "first_name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: str) -> str:
        return _require_non_blank(value, "last_name")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _require_non_blank(value, "Password")


class TwoFactorLoginRequest(BaseModel):
    token: str = Field(..., max_length=10, description="TOTP code from the authenticator app")
    temp_token: str = Field(..., max_length=4096)
    remember_me: bool = False


class TokenRefreshRequest(BaseModel):
    """Body fallback for clients that cannot hold the refresh cookie."""
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)
    terminate_all_others: bool = False


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    email: str
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TwoFactorVerifyRequest(BaseModel):
    token: str = Field(..., max_length=10)
    secret: str = Field(..., min_length=16, max_length=128)


class TwoFactorDisableRequest(BaseModel):
    token: str = Field(..., max_length=10, description="Current TOTP code to verify identity")


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    provider: str
    two_factor_enabled: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            provider=user.provider.value,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
        )


class MeResponse(UserResponse):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    access_expires_at: datetime


class AuthResponse(TokenResponse):
    user: UserResponse


class TwoFactorChallengeResponse(BaseModel):
    two_factor_required: bool = True
    temp_token: str


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str


class DeviceInfoResponse(BaseModel):
    os: str
    browser: str
    device_type: str
    location: str
    ip_address: str


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_active: datetime
    device_info: DeviceInfoResponse
    is_current: bool

    @classmethod
    def from_session(cls, session: Session, *, is_current: bool) -> "SessionResponse":
        device = session.device
        return cls(
            id=session.id,
            created_at=session.created_at,
            last_active=session.last_active,
            device_info=DeviceInfoResponse(
                os=device.os,
                browser=device.browser,
                device_type=device.device_type,
                location=device.location,
                ip_address=device.ip_address,
            ),
            is_current=is_current,
        )


class MessageResponse(BaseModel):
    message: str
