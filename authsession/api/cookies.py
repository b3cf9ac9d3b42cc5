from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from authsession.config import Settings
from authsession.service.tokens import TokenPair

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def apply_session_cookies(
    response: Response, pair: TokenPair, *, remember_me: bool, settings: Settings
) -> None:
    """Set both token cookies; without remember-me they are browser-session cookies."""
    max_age = settings.remember_me_days * 24 * 60 * 60 if remember_me else None
    for name, value in ((ACCESS_COOKIE, pair.access_token), (REFRESH_COOKIE, pair.refresh_token)):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=settings.secure_cookies,
            samesite="lax",
            max_age=max_age,
            path="/",
        )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name, path="/", secure=settings.secure_cookies, httponly=True, samesite="lax"
        )


def read_access_token(request: Request) -> Optional[str]:
    """Bearer header first, then the access cookie."""
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(ACCESS_COOKIE) or None
