"""Unit tests for TOTP and the two-factor gate."""

import pytest

from authsession.service.errors import (
    ConflictError,
    InvalidCodeError,
    InvalidTempTokenError,
    RateLimitedError,
    ValidationError,
)
from authsession.service.tokens import TokenIssuer
from authsession.service.two_factor import (
    TwoFactorGate,
    generate_secret,
    generate_totp,
    verify_totp,
)

# RFC 6238 appendix B seed "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def _wrong_code(secret: str, now: float) -> str:
    valid = {generate_totp(secret, now + step * 30) for step in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)


@pytest.fixture
def tokens(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def gate(memory_store, tokens, settings, clock):
    return TwoFactorGate(memory_store, tokens, settings, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice@example.com", password_hash="x")


@pytest.fixture
def enrolled(memory_store, gate, user, clock):
    secret = gate.provision(user.id)["secret"]
    gate.confirm_enable(user.id, generate_totp(secret, clock.now), secret)
    return memory_store.get_user(user.id)


class TestTotp:
    def test_rfc6238_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_adjacent_steps_accepted(self):
        now = 1_700_000_025
        for offset in (-30, 0, 30):
            assert verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now + offset), now=now)

    def test_two_steps_away_rejected(self):
        now = 1_700_000_025
        assert not verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now + 60), now=now)
        assert not verify_totp(RFC_SECRET, generate_totp(RFC_SECRET, now - 60), now=now)

    def test_spaces_tolerated_and_non_digits_rejected(self):
        code = generate_totp(RFC_SECRET, 59)
        assert verify_totp(RFC_SECRET, f"{code[:3]} {code[3:]}", now=59)
        assert not verify_totp(RFC_SECRET, "abcdef", now=59)
        assert not verify_totp(RFC_SECRET, "", now=59)
        assert not verify_totp("", code, now=59)

    def test_generated_secret_is_base32(self):
        secret = generate_secret()
        assert len(secret) == 32
        assert len(generate_totp(secret, 0)) == 6


class TestEnrollment:
    def test_provision_does_not_persist(self, gate, memory_store, user):
        provisioned = gate.provision(user.id)

        assert provisioned["otpauth_url"].startswith("otpauth://totp/")
        assert f"secret={provisioned['secret']}" in provisioned["otpauth_url"]
        stored = memory_store.get_user(user.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None

    def test_confirm_enable_with_valid_code(self, gate, memory_store, user, clock):
        secret = gate.provision(user.id)["secret"]

        updated = gate.confirm_enable(user.id, generate_totp(secret, clock.now), secret)

        assert updated.two_factor_enabled
        assert memory_store.get_user(user.id).two_factor_secret == secret

    def test_confirm_enable_rejects_bad_code(self, gate, memory_store, user, clock):
        secret = gate.provision(user.id)["secret"]

        with pytest.raises(InvalidCodeError):
            gate.confirm_enable(user.id, _wrong_code(secret, clock.now), secret)
        assert not memory_store.get_user(user.id).two_factor_enabled

    def test_provision_when_enabled_conflicts(self, gate, enrolled):
        with pytest.raises(ConflictError):
            gate.provision(enrolled.id)

    def test_disable_wipes_secret(self, gate, memory_store, enrolled):
        gate.disable(enrolled.id)

        stored = memory_store.get_user(enrolled.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None


class TestLoginStep:
    async def test_verify_during_login(self, gate, tokens, enrolled, clock):
        temp = tokens.issue_two_factor(enrolled.id)

        user = await gate.verify_during_login(
            temp, generate_totp(enrolled.two_factor_secret, clock.now)
        )

        assert user.id == enrolled.id

    async def test_bad_temp_token(self, gate, enrolled, clock):
        code = generate_totp(enrolled.two_factor_secret, clock.now)

        with pytest.raises(InvalidTempTokenError):
            await gate.verify_during_login("not-a-token", code)

    async def test_expired_temp_token(self, gate, tokens, enrolled, clock):
        temp = tokens.issue_two_factor(enrolled.id)
        clock.advance(5 * 60 + 31)

        with pytest.raises(InvalidTempTokenError):
            await gate.verify_during_login(
                temp, generate_totp(enrolled.two_factor_secret, clock.now)
            )

    async def test_access_token_is_not_a_temp_token(self, gate, tokens, enrolled, clock):
        access = tokens.issue_access(enrolled, "session-1")

        with pytest.raises(InvalidTempTokenError):
            await gate.verify_during_login(
                access, generate_totp(enrolled.two_factor_secret, clock.now)
            )

    async def test_wrong_code(self, gate, tokens, enrolled, clock):
        temp = tokens.issue_two_factor(enrolled.id)

        with pytest.raises(InvalidCodeError) as excinfo:
            await gate.verify_during_login(
                temp, _wrong_code(enrolled.two_factor_secret, clock.now)
            )
        assert excinfo.value.status_code == 400

    async def test_not_enabled(self, gate, user, clock):
        with pytest.raises(ValidationError):
            await gate.check_code(user, "123456")


class TestLockout:
    async def test_lockout_after_max_failures(self, gate, enrolled, clock):
        bad = _wrong_code(enrolled.two_factor_secret, clock.now)
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await gate.check_code(enrolled, bad)

        # Even the right code is refused while locked
        with pytest.raises(RateLimitedError) as excinfo:
            await gate.check_code(
                enrolled, generate_totp(enrolled.two_factor_secret, clock.now)
            )
        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after > 0

    async def test_lockout_expires(self, gate, enrolled, clock):
        bad = _wrong_code(enrolled.two_factor_secret, clock.now)
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                await gate.check_code(enrolled, bad)

        clock.advance(301)
        await gate.check_code(enrolled, generate_totp(enrolled.two_factor_secret, clock.now))

    async def test_success_clears_failures(self, gate, enrolled, clock):
        secret = enrolled.two_factor_secret
        bad = _wrong_code(secret, clock.now)
        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await gate.check_code(enrolled, bad)

        await gate.check_code(enrolled, generate_totp(secret, clock.now))

        for _ in range(4):
            with pytest.raises(InvalidCodeError):
                await gate.check_code(enrolled, bad)
        await gate.check_code(enrolled, generate_totp(secret, clock.now))
