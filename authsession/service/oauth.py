from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.credentials import normalize_email
from authsession.service.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
    WrongProviderError,
)
from authsession.service.sessions import AuthStore
from authsession.storage.errors import ConstraintViolation
from authsession.storage.models import AuthProvider, User, utcnow
from authsession.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_STATE_TTL = timedelta(minutes=10)


@dataclass
class ExternalIdentity:
    """An identity asserted by an OAuth provider, normalized across providers."""

    provider: AuthProvider
    email: str
    first_name: str = ""
    last_name: str = ""
    provider_uid: str = ""


class OAuthProvider:
    """Authorization-code exchange against one provider over httpx.

    Subclasses set the endpoints and map the provider profile into an
    ``ExternalIdentity``.
    """

    name: AuthProvider
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id or "",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **self._extra_auth_params(),
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def exchange_code(self, code: str, redirect_uri: str) -> ExternalIdentity:
        """Trade an authorization code for the caller's identity.

        Raises:
            AuthenticationError: The provider rejected the code or returned
                no usable profile
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name.value)
                    raise AuthenticationError(f"Login failed using {self.name.value}")

                headers = self._userinfo_headers(access_token)
                profile_response = await client.get(self.userinfo_url, headers=headers)
                profile_response.raise_for_status()
                profile = profile_response.json()
                if not isinstance(profile, dict):
                    raise AuthenticationError(f"Login failed using {self.name.value}")
                return await self._identity_from_profile(client, profile, headers)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name.value,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise AuthenticationError(f"Login failed using {self.name.value}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name.value, error=str(exc))
            raise AuthenticationError(f"Login failed using {self.name.value}") from exc

    async def _identity_from_profile(
        self, client: httpx.AsyncClient, profile: Dict[str, Any], headers: Dict[str, str]
    ) -> ExternalIdentity:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    name = AuthProvider.GOOGLE
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"prompt": "select_account"}

    async def _identity_from_profile(self, client, profile, headers) -> ExternalIdentity:
        email = normalize_email(profile.get("email") or "")
        if not email:
            raise AuthenticationError("Email not found")
        return ExternalIdentity(
            provider=self.name,
            email=email,
            first_name=profile.get("given_name") or "",
            last_name=profile.get("family_name") or "",
            provider_uid=str(profile.get("id") or profile.get("sub") or ""),
        )


class GitHubProvider(OAuthProvider):
    name = AuthProvider.GITHUB
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    @staticmethod
    def split_name(full_name: str) -> tuple[str, str]:
        first, _, rest = (full_name or "").strip().partition(" ")
        return first, rest.strip()

    async def _identity_from_profile(self, client, profile, headers) -> ExternalIdentity:
        email = profile.get("email")
        if not email:
            # Private addresses are only listed on /user/emails
            emails_response = await client.get(self.emails_url, headers=headers)
            if emails_response.status_code == 200:
                entries = emails_response.json()
                email = next(
                    (
                        e.get("email")
                        for e in entries
                        if isinstance(e, dict) and e.get("primary") and e.get("verified")
                    ),
                    None,
                )
        if not email:
            raise AuthenticationError("Email not found")
        first_name, last_name = self.split_name(profile.get("name") or profile.get("login") or "")
        return ExternalIdentity(
            provider=self.name,
            email=normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            provider_uid=str(profile.get("id") or ""),
        )


class OAuthLinker:
    """Maps an external identity onto a local account, creating it on first use."""

    def __init__(self, store: AuthStore):
        self.store = store

    def link(self, identity: ExternalIdentity) -> User:
        """Return the account for ``identity``.

        Raises:
            WrongProviderError: The email belongs to an account bound to a
                different provider
        """
        email = normalize_email(identity.email)
        user = self.store.get_user_by_email(email)
        if user:
            if user.provider != identity.provider:
                raise WrongProviderError(user.provider.value)
            return user
        try:
            user = self.store.create_user(
                email,
                first_name=identity.first_name,
                last_name=identity.last_name,
                password_hash="",
                provider=identity.provider,
            )
        except ConstraintViolation:
            # Concurrent first login created it; re-read and re-check the provider
            user = self.store.get_user_by_email(email)
            if not user:
                raise
            if user.provider != identity.provider:
                raise WrongProviderError(user.provider.value)
            return user
        logger.info("oauth_user_created", user_id=user.id, provider=identity.provider.value)
        return user


class OAuthFlow:
    """Browser redirect flow: single-use state, code exchange, account link."""

    def __init__(
        self,
        providers: Dict[str, OAuthProvider],
        linker: OAuthLinker,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.providers = providers
        self.linker = linker
        self.settings = settings
        self.cache = cache
        self._state_lock = threading.Lock()
        self._states: dict[str, tuple[str, datetime]] = {}

    def provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if not provider:
            raise NotFoundError(f"Unsupported OAuth provider: {name}")
        if not provider.configured:
            logger.warning("oauth_not_configured", provider=name)
            raise ValidationError(f"OAuth provider {name} is not configured")
        return provider

    def redirect_uri(self, name: str) -> str:
        return f"{self.settings.oauth_redirect_base_url}{self.settings.api_prefix}/{name}/callback"

    def _purge_expired_states(self, now: datetime) -> None:
        with self._state_lock:
            for state, (_, expires_at) in list(self._states.items()):
                if expires_at < now:
                    self._states.pop(state, None)

    async def start(self, name: str) -> str:
        provider = self.provider(name)
        state = secrets.token_urlsafe(24)
        now = utcnow()
        expires_at = now + _STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, name, expires_at)
        else:
            self._purge_expired_states(now)
            with self._state_lock:
                self._states[state] = (name, expires_at)
        return provider.authorization_url(state, self.redirect_uri(name))

    async def _consume_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    async def complete(self, name: str, code: Optional[str], state: Optional[str]) -> User:
        """Validate the callback and return the linked account.

        Raises:
            AuthenticationError: State missing, reused, expired, or issued for
                another provider; or the code exchange failed
            WrongProviderError: Email already bound to another provider
        """
        provider = self.provider(name)
        stored = await self._consume_state(state) if state else None
        if not stored or stored[0] != name or stored[1] < utcnow():
            logger.warning("oauth_state_invalid", provider=name)
            raise AuthenticationError(f"Login failed using {name}")
        if not code:
            raise AuthenticationError(f"Login failed using {name}")
        identity = await provider.exchange_code(code, self.redirect_uri(name))
        user = self.linker.link(identity)
        logger.info("oauth_login_success", user_id=user.id, provider=name)
        return user


def build_providers(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, OAuthProvider]:
    return {
        AuthProvider.GOOGLE.value: GoogleProvider(
            settings.oauth_google_client_id,
            settings.oauth_google_client_secret,
            transport=transport,
        ),
        AuthProvider.GITHUB.value: GitHubProvider(
            settings.oauth_github_client_id,
            settings.oauth_github_client_secret,
            transport=transport,
        ),
    }


__all__ = [
    "ExternalIdentity",
    "OAuthProvider",
    "GoogleProvider",
    "GitHubProvider",
    "OAuthLinker",
    "OAuthFlow",
    "build_providers",
]
