from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error, invalid_code (400)
    - unauthorized, invalid_credentials, token_expired, invalid_token,
      session_revoked (401)
    - forbidden, wrong_provider (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # When set, the boundary deletes the accessToken/refreshToken cookies
    clear_session_cookies: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCodeError(ValidationError):
    """Submitted TOTP code did not match (400)."""
    error_code = "invalid_code"


class InvalidOrExpiredTokenError(ValidationError):
    """Password reset token unknown, already used, or expired (400)."""
    error_code = "invalid_token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Password did not verify (401)."""
    error_code = "invalid_credentials"


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but it has expired; retry after refresh (401)."""
    error_code = "token_expired"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, tampered, or of the wrong kind; do not retry (401)."""
    error_code = "invalid_token"


class InvalidRefreshTokenError(InvalidTokenError):
    """Refresh token cannot be exchanged; the client must log in again (401)."""
    clear_session_cookies = True


class InvalidTempTokenError(InvalidTokenError):
    """Two-factor bridge token expired or tampered; restart the login (401)."""


class SessionRevokedError(AuthenticationError):
    """The session named by the token no longer exists (401)."""
    error_code = "session_revoked"
    clear_session_cookies = True


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class WrongProviderError(ForbiddenError):
    """Account is bound to a different authentication method (403)."""
    error_code = "wrong_provider"

    def __init__(self, provider: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Please log in using {provider}.",
            detail={"provider": provider},
        )
        self.provider = provider


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, limit: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after, "limit": limit})
        self.retry_after = retry_after
        self.limit = limit


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCodeError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "InvalidTokenError",
    "InvalidRefreshTokenError",
    "InvalidTempTokenError",
    "SessionRevokedError",
    "ForbiddenError",
    "WrongProviderError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
