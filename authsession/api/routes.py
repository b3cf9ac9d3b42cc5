from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from authsession.api.cookies import (
    REFRESH_COOKIE,
    apply_session_cookies,
    clear_session_cookies,
    read_access_token,
)
from authsession.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SessionResponse,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorChallengeResponse,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserResponse,
)
from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.device import describe_device
from authsession.service.errors import (
    AuthenticationError,
    InvalidRefreshTokenError,
    ServiceError,
)
from authsession.service.rate_limit import RateLimitClass
from authsession.service.runtime import Runtime, get_runtime
from authsession.service.sessions import Principal
from authsession.service.tokens import TokenPair
from authsession.storage.models import User

logger = get_logger(__name__)


def client_ip(request: Request, settings: Settings) -> str:
    """Caller address; the first X-Forwarded-For hop only behind a trusted proxy."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else ""


def rate_limited(limit_class: RateLimitClass):
    """Dependency counting the request against ``limit_class`` for the caller's IP."""

    async def _enforce(request: Request) -> None:
        runtime = get_runtime()
        await runtime.rate_limiter.enforce(limit_class, client_ip(request, runtime.settings))

    return _enforce


async def get_principal(request: Request) -> Principal:
    token = read_access_token(request)
    if not token:
        raise AuthenticationError("Unauthorized request")
    return get_runtime().sessions.authenticate(token)


router = APIRouter(dependencies=[Depends(rate_limited(RateLimitClass.GLOBAL))])


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(access_token=pair.access_token, access_expires_at=pair.access_expires_at)


async def _start_session(
    runtime: Runtime, request: Request, response: Response, user: User, *, remember_me: bool
) -> AuthResponse:
    """Create a session for ``user`` from the request's device and set the cookies."""
    user_agent = request.headers.get("user-agent") or ""
    device = await describe_device(
        user_agent, client_ip(request, runtime.settings), runtime.locator
    )
    session, pair = runtime.sessions.create(
        user, device, user_agent=user_agent, remember_me=remember_me
    )
    apply_session_cookies(response, pair, remember_me=remember_me, settings=runtime.settings)
    logger.info("login_success", user_id=user.id, session_id=session.id)
    return AuthResponse(
        access_token=pair.access_token,
        access_expires_at=pair.access_expires_at,
        user=UserResponse.from_user(user),
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an email/password account.

    Raises:
        409: Email already registered
    """
    runtime = get_runtime()
    user = runtime.credentials.register(
        body.email, body.password, first_name=body.first_name, last_name=body.last_name
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post(
    "/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited(RateLimitClass.LOGIN))],
)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with 2FA get a short-lived temp token and no cookies; the login
    finishes at ``/2fa/login``.

    Raises:
        401: Incorrect password
        403: Account uses an OAuth provider
        404: No such user
        429: Too many login attempts
    """
    runtime = get_runtime()
    user = runtime.credentials.verify(body.email, body.password)
    if user.two_factor_enabled:
        logger.info("login_two_factor_required", user_id=user.id)
        return Envelope(
            status="ok",
            data=TwoFactorChallengeResponse(temp_token=runtime.tokens.issue_two_factor(user.id)),
        )
    data = await _start_session(runtime, request, response, user, remember_me=body.remember_me)
    return Envelope(status="ok", data=data)


@router.post(
    "/2fa/login",
    response_model=Envelope,
    tags=["2fa"],
    dependencies=[Depends(rate_limited(RateLimitClass.LOGIN))],
)
async def two_factor_login(body: TwoFactorLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    user = await runtime.two_factor.verify_during_login(body.temp_token, body.token)
    data = await _start_session(runtime, request, response, user, remember_me=body.remember_me)
    return Envelope(status="ok", data=data)


@router.post("/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request, response: Response, body: Optional[TokenRefreshRequest] = None
):
    """Exchange the refresh cookie for a new token pair.

    Raises:
        401: invalid_token when the refresh token is missing, expired, or
            already rotated; session_revoked when its session is gone
    """
    runtime = get_runtime()
    raw = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    if not raw:
        raise InvalidRefreshTokenError("Refresh token missing")
    session, pair = runtime.sessions.rotate(raw)
    apply_session_cookies(
        response, pair, remember_me=session.remember_me, settings=runtime.settings
    )
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/logout", response_model=Envelope, tags=["sessions"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
):
    """End the current session, another session by id, or every other session."""
    runtime = get_runtime()
    body = body or LogoutRequest()
    if body.session_id and body.session_id != principal.session_id:
        runtime.sessions.terminate(body.session_id, principal.user_id)
        return Envelope(status="ok", data=MessageResponse(message="Session logged out successfully"))
    if body.terminate_all_others and not body.session_id:
        runtime.sessions.terminate_all_except(principal.user_id, principal.session_id)
        return Envelope(
            status="ok", data=MessageResponse(message="All other sessions terminated successfully")
        )
    runtime.sessions.terminate(principal.session_id, principal.user_id)
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: Principal = Depends(get_principal)):
    user = UserResponse.from_user(principal.user)
    return Envelope(
        status="ok",
        data=MeResponse(
            **user.model_dump(),
            ip_address=principal.session.device.ip_address,
            user_agent=principal.session.user_agent,
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    views = runtime.sessions.list(principal.user_id, principal.session_id)
    return Envelope(
        status="ok",
        data=[SessionResponse.from_session(v.session, is_current=v.is_current) for v in views],
    )


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Change the password; every session, this one included, is ended."""
    runtime = get_runtime()
    runtime.credentials.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    clear_session_cookies(response, runtime.settings)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password changed successfully. Please log in again."),
    )


@router.post(
    "/forgot-password",
    response_model=Envelope,
    tags=["password"],
    dependencies=[Depends(rate_limited(RateLimitClass.PASSWORD_RESET))],
)
async def forgot_password(body: PasswordForgotRequest):
    """Mail a reset link; the answer is identical whether or not the account exists."""
    runtime = get_runtime()
    await runtime.password_reset.request(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Reset link sent to email if account exists"),
    )


@router.post(
    "/reset-password",
    response_model=Envelope,
    tags=["password"],
    dependencies=[Depends(rate_limited(RateLimitClass.PASSWORD_RESET))],
)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    runtime.password_reset.reset(body.email, body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successful"))


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    provisioned = runtime.two_factor.provision(principal.user_id)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**provisioned))


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorVerifyRequest, principal: Principal = Depends(get_principal)
):
    """Enable 2FA once a code proves the caller loaded the provisioned secret."""
    runtime = get_runtime()
    user = runtime.two_factor.confirm_enable(principal.user_id, body.token, body.secret)
    await asyncio.to_thread(runtime.email.send_two_factor_enabled, user.email)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.two_factor.check_code(principal.user, body.token)
    user = runtime.two_factor.disable(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


# Registered last so the catch-all provider segment never shadows /me or /sessions
@router.get(
    "/{provider}",
    tags=["oauth"],
    dependencies=[Depends(rate_limited(RateLimitClass.OAUTH))],
)
async def oauth_start(provider: str = Path(..., max_length=32)):
    """Redirect the browser to the provider's consent screen."""
    runtime = get_runtime()
    authorization_url = await runtime.oauth.start(provider)
    return RedirectResponse(authorization_url, status_code=302)


@router.get(
    "/{provider}/callback",
    tags=["oauth"],
    dependencies=[Depends(rate_limited(RateLimitClass.OAUTH))],
)
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider redirect and land the browser on the frontend.

    Failures redirect to ``/login?error=...`` rather than answering with JSON.
    OAuth logins do not pass through the 2FA step.
    """
    runtime = get_runtime()
    frontend_url = runtime.settings.frontend_url
    try:
        if error:
            logger.warning("oauth_provider_denied", provider=provider, error=error)
            raise AuthenticationError(f"Login failed using {provider}")
        user = await runtime.oauth.complete(provider, code, state)
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", provider=provider, error_code=exc.error_code)
        query = urlencode({"error": exc.message})
        return RedirectResponse(f"{frontend_url}/login?{query}", status_code=302)

    response = RedirectResponse(frontend_url, status_code=302)
    await _start_session(runtime, request, response, user, remember_me=True)
    return response
