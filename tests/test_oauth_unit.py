"""Unit tests for OAuth providers, account linking and the redirect flow."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authsession.service.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
    WrongProviderError,
)
from authsession.service.oauth import (
    ExternalIdentity,
    GitHubProvider,
    GoogleProvider,
    OAuthFlow,
    OAuthLinker,
    build_providers,
)
from authsession.storage.models import AuthProvider


def google_handler(profile=None, token_status=200):
    profile = profile if profile is not None else {
        "id": "g-123",
        "email": "Gina@Example.com",
        "given_name": "Gina",
        "family_name": "Lopez",
    }

    def handler(request):
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            assert form["code"] == ["good-code"]
            return httpx.Response(200, json={"access_token": "provider-token"})
        if request.url.path == "/oauth2/v2/userinfo":
            assert request.headers["Authorization"] == "Bearer provider-token"
            return httpx.Response(200, json=profile)
        return httpx.Response(404)

    return handler


def github_handler(user_email=None, emails=None):
    def handler(request):
        if request.url.host == "github.com":
            return httpx.Response(200, json={"access_token": "gh-token"})
        if request.url.path == "/user":
            return httpx.Response(
                200,
                json={"id": 42, "login": "octo", "name": "Mona Lisa Octocat", "email": user_email},
            )
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=emails or [])
        return httpx.Response(404)

    return handler


def _google(handler):
    return GoogleProvider("client-id", "client-secret", transport=httpx.MockTransport(handler))


def _github(handler):
    return GitHubProvider("client-id", "client-secret", transport=httpx.MockTransport(handler))


class TestProviders:
    async def test_google_profile(self):
        identity = await _google(google_handler()).exchange_code("good-code", "http://cb")

        assert identity.provider == AuthProvider.GOOGLE
        assert identity.email == "gina@example.com"
        assert (identity.first_name, identity.last_name) == ("Gina", "Lopez")
        assert identity.provider_uid == "g-123"

    async def test_github_private_email_from_emails_endpoint(self):
        emails = [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "Mona@Example.com", "primary": True, "verified": True},
        ]

        identity = await _github(github_handler(emails=emails)).exchange_code("c", "http://cb")

        assert identity.email == "mona@example.com"
        assert (identity.first_name, identity.last_name) == ("Mona", "Lisa Octocat")
        assert identity.provider_uid == "42"

    async def test_github_unverified_primary_is_not_used(self):
        emails = [{"email": "mona@example.com", "primary": True, "verified": False}]

        with pytest.raises(AuthenticationError):
            await _github(github_handler(emails=emails)).exchange_code("c", "http://cb")

    async def test_rejected_code(self):
        with pytest.raises(AuthenticationError) as excinfo:
            await _google(google_handler(token_status=400)).exchange_code("bad", "http://cb")
        assert excinfo.value.message == "Login failed using google"

    async def test_missing_email(self):
        with pytest.raises(AuthenticationError) as excinfo:
            await _google(google_handler(profile={"id": "g-1"})).exchange_code(
                "good-code", "http://cb"
            )
        assert excinfo.value.message == "Email not found"

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(AuthenticationError):
            await _google(handler).exchange_code("good-code", "http://cb")

    def test_authorization_url(self):
        url = urlparse(_google(google_handler()).authorization_url("st4te", "http://cb"))
        query = parse_qs(url.query)

        assert url.netloc == "accounts.google.com"
        assert query["state"] == ["st4te"]
        assert query["redirect_uri"] == ["http://cb"]
        assert query["response_type"] == ["code"]
        assert query["prompt"] == ["select_account"]


class TestLinker:
    def test_first_login_creates_account(self, memory_store):
        user = OAuthLinker(memory_store).link(
            ExternalIdentity(AuthProvider.GITHUB, "Mona@Example.com", "Mona", "Lisa")
        )

        assert user.provider == AuthProvider.GITHUB
        assert user.email == "mona@example.com"
        assert user.password_hash == ""

    def test_second_login_reuses_account(self, memory_store):
        linker = OAuthLinker(memory_store)
        identity = ExternalIdentity(AuthProvider.GOOGLE, "gina@example.com")

        assert linker.link(identity).id == linker.link(identity).id
        assert len(memory_store.users) == 1

    def test_email_bound_to_other_provider(self, memory_store):
        memory_store.create_user("alice@example.com", password_hash="x")

        with pytest.raises(WrongProviderError) as excinfo:
            OAuthLinker(memory_store).link(
                ExternalIdentity(AuthProvider.GOOGLE, "alice@example.com")
            )
        assert excinfo.value.provider == "email"


@pytest.fixture
def flow(memory_store, settings):
    providers = build_providers(settings)
    providers["google"] = _google(google_handler())
    return OAuthFlow(providers, OAuthLinker(memory_store), settings)


def _state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestFlow:
    async def test_round_trip(self, flow, settings):
        url = await flow.start("google")
        assert parse_qs(urlparse(url).query)["redirect_uri"] == [
            f"{settings.oauth_redirect_base_url}{settings.api_prefix}/google/callback"
        ]

        user = await flow.complete("google", "good-code", _state_of(url))

        assert user.email == "gina@example.com"

    async def test_state_is_single_use(self, flow):
        state = _state_of(await flow.start("google"))
        await flow.complete("google", "good-code", state)

        with pytest.raises(AuthenticationError):
            await flow.complete("google", "good-code", state)

    async def test_unknown_or_missing_state(self, flow):
        with pytest.raises(AuthenticationError):
            await flow.complete("google", "good-code", "forged")
        with pytest.raises(AuthenticationError):
            await flow.complete("google", "good-code", None)

    async def test_state_from_another_provider(self, flow, settings):
        flow.providers["github"] = _github(github_handler(user_email="mona@example.com"))
        state = _state_of(await flow.start("github"))

        with pytest.raises(AuthenticationError):
            await flow.complete("google", "good-code", state)

    async def test_missing_code(self, flow):
        state = _state_of(await flow.start("google"))

        with pytest.raises(AuthenticationError):
            await flow.complete("google", None, state)

    async def test_unconfigured_provider(self, flow):
        # github keeps the unset client id from settings
        with pytest.raises(ValidationError):
            await flow.start("github")

    async def test_unknown_provider(self, flow):
        with pytest.raises(NotFoundError):
            await flow.start("myspace")
