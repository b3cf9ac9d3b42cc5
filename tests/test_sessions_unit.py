"""Unit tests for the session registry.

Tests for:
- Session creation and refresh-hash binding
- Access token authentication against live sessions
- Termination and listing
- Refresh rotation, reuse detection and the rotation race
"""

from datetime import timedelta

import pytest

from authsession.service.errors import (
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    SessionRevokedError,
    TokenExpiredError,
)
from authsession.service.sessions import SessionRegistry
from authsession.service.tokens import TokenIssuer, TokenKind, token_digest
from authsession.storage.models import DeviceInfo


@pytest.fixture
def tokens(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def registry(memory_store, tokens, settings):
    return SessionRegistry(memory_store, tokens, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@example.com", password_hash="x")


@pytest.fixture
def other_user(memory_store):
    return memory_store.create_user("bob@example.com", password_hash="x")


class TestCreate:
    def test_create_binds_refresh_hash(self, registry, memory_store, tokens, user):
        device = DeviceInfo(browser="Chrome 120.0", os="Windows 10", ip_address="203.0.113.5")

        session, pair = registry.create(user, device, user_agent="UA", remember_me=True)

        stored = memory_store.get_session(session.id)
        assert stored.refresh_token_hash == token_digest(pair.refresh_token)
        assert stored.remember_me is True
        assert stored.device.browser == "Chrome 120.0"
        assert stored.user_agent == "UA"
        assert tokens.verify(TokenKind.ACCESS, pair.access_token)["sid"] == session.id
        assert tokens.verify(TokenKind.REFRESH, pair.refresh_token)["sid"] == session.id

    def test_raw_refresh_token_is_not_stored(self, registry, memory_store, user):
        session, pair = registry.create(user)

        assert memory_store.get_session(session.id).refresh_token_hash != pair.refresh_token


class TestAuthenticate:
    def test_live_session(self, registry, user):
        session, pair = registry.create(user)

        principal = registry.authenticate(pair.access_token)

        assert principal.user_id == user.id
        assert principal.session_id == session.id
        assert principal.claims["email"] == "alice@example.com"

    def test_deleted_session_revokes_access_token(self, registry, user):
        session, pair = registry.create(user)
        registry.terminate(session.id, user.id)

        with pytest.raises(SessionRevokedError) as excinfo:
            registry.authenticate(pair.access_token)
        assert excinfo.value.error_code == "session_revoked"

    def test_refresh_token_cannot_authenticate(self, registry, user):
        _, pair = registry.create(user)

        with pytest.raises(InvalidTokenError):
            registry.authenticate(pair.refresh_token)

    def test_expired_access_token(self, registry, user, clock):
        _, pair = registry.create(user)
        clock.advance(16 * 60)

        with pytest.raises(TokenExpiredError):
            registry.authenticate(pair.access_token)


class TestTerminate:
    def test_cannot_terminate_someone_elses_session(self, registry, user, other_user):
        session, _ = registry.create(user)

        with pytest.raises(NotFoundError):
            registry.terminate(session.id, other_user.id)
        assert registry.find(session.id) is not None

    def test_unknown_session(self, registry, user):
        with pytest.raises(NotFoundError):
            registry.terminate("missing", user.id)

    def test_terminate_all_except(self, registry, user, other_user):
        keep, _ = registry.create(user)
        registry.create(user)
        registry.create(user)
        foreign, _ = registry.create(other_user)

        assert registry.terminate_all_except(user.id, keep.id) == 2
        assert [v.session.id for v in registry.list(user.id, keep.id)] == [keep.id]
        assert registry.find(foreign.id) is not None

    def test_terminate_all(self, registry, user):
        registry.create(user)
        registry.create(user)

        assert registry.terminate_all(user.id) == 2
        assert registry.list(user.id, None) == []

    def test_list_flags_current(self, registry, user):
        first, _ = registry.create(user)
        second, _ = registry.create(user)

        views = {v.session.id: v.is_current for v in registry.list(user.id, second.id)}

        assert views == {first.id: False, second.id: True}


class TestRotate:
    def test_rotation_issues_new_pair(self, registry, memory_store, user):
        session, pair = registry.create(user)

        rotated_session, rotated = registry.rotate(pair.refresh_token)

        assert rotated_session.id == session.id
        assert rotated.refresh_token != pair.refresh_token
        assert memory_store.get_session(session.id).refresh_token_hash == token_digest(
            rotated.refresh_token
        )
        assert registry.authenticate(rotated.access_token).session_id == session.id

    def test_reused_refresh_token_rejected(self, registry, user):
        _, pair = registry.create(user)
        registry.rotate(pair.refresh_token)

        with pytest.raises(InvalidRefreshTokenError) as excinfo:
            registry.rotate(pair.refresh_token)
        assert excinfo.value.clear_session_cookies

    def test_rotate_after_logout(self, registry, user):
        session, pair = registry.create(user)
        registry.terminate(session.id, user.id)

        with pytest.raises(SessionRevokedError):
            registry.rotate(pair.refresh_token)

    def test_expired_refresh_token(self, registry, user, clock):
        _, pair = registry.create(user)
        clock.advance(timedelta(days=8).total_seconds())

        with pytest.raises(InvalidRefreshTokenError):
            registry.rotate(pair.refresh_token)

    def test_access_token_cannot_refresh(self, registry, user):
        _, pair = registry.create(user)

        with pytest.raises(InvalidRefreshTokenError):
            registry.rotate(pair.access_token)

    def test_losing_the_rotation_race(self, registry, memory_store, user, monkeypatch):
        _, pair = registry.create(user)
        # A concurrent rotation wins between the hash check and the swap
        monkeypatch.setattr(memory_store, "replace_refresh_token_hash", lambda *args: False)

        with pytest.raises(InvalidRefreshTokenError):
            registry.rotate(pair.refresh_token)

    def test_without_rotation_refresh_token_is_kept(self, memory_store, tokens, settings, user):
        registry = SessionRegistry(
            memory_store, tokens, settings.model_copy(update={"rotate_refresh_tokens": False})
        )
        session, pair = registry.create(user)

        _, again = registry.rotate(pair.refresh_token)

        assert again.refresh_token == pair.refresh_token
        assert again.access_token != pair.access_token
        assert memory_store.get_session(session.id).refresh_token_hash == token_digest(
            pair.refresh_token
        )
        registry.rotate(pair.refresh_token)
