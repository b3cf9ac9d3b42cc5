from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from authsession.config import Settings
from authsession.logging import get_logger
from authsession.service.errors import InvalidTokenError, TokenExpiredError
from authsession.storage.models import User

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TWO_FACTOR = "two_factor"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def token_digest(token: str) -> str:
    """sha256 hex of a bearer secret; only digests are ever stored."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenIssuer:
    """Mints and verifies HS256 JWTs for the three token kinds.

    Access and refresh tokens share JWT_SECRET; the two-factor bridge token is
    signed with TWO_FACTOR_SECRET so neither can stand in for the other.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock
        self._secrets = {
            TokenKind.ACCESS: settings.jwt_secret,
            TokenKind.REFRESH: settings.jwt_secret,
            TokenKind.TWO_FACTOR: settings.two_factor_secret,
        }
        self._ttls = {
            TokenKind.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenKind.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
            TokenKind.TWO_FACTOR: timedelta(
                minutes=settings.two_factor_token_ttl_minutes
            ),
        }
        self._leeway = settings.clock_skew_seconds

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self._ttls[TokenKind(kind)]

    def issue(
        self, kind: TokenKind, claims: dict[str, Any], ttl: Optional[timedelta] = None
    ) -> str:
        kind = TokenKind(kind)
        now = self._clock()
        lifetime = ttl if ttl is not None else self._ttls[kind]
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now),
            "exp": int(now + lifetime.total_seconds()),
            "jti": str(uuid.uuid4()),
            "token_type": kind.value,
        }
        return self._encode_jwt(payload, self._secrets[kind])

    def verify(self, kind: TokenKind, token: str) -> dict[str, Any]:
        """Return the claims of a valid token of ``kind``.

        Raises:
            TokenExpiredError: Signature and claims check out but ``exp`` passed
            InvalidTokenError: Anything else (format, algorithm, signature,
                issuer, audience, token_type)
        """
        kind = TokenKind(kind)
        payload = self._decode_jwt(token, self._secrets[kind])
        if payload is None:
            raise InvalidTokenError("Invalid token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token audience")
        if payload.get("token_type") != kind.value:
            logger.warning(
                "jwt_wrong_token_type", expected=kind.value, token_kind=payload.get("token_type")
            )
            raise InvalidTokenError("Wrong token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token has no expiry")
        if exp_ts <= self._clock() - self._leeway:
            raise TokenExpiredError("Token expired")
        return payload

    def issue_session_pair(self, user: User, session_id: str) -> TokenPair:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        refresh = self.issue(TokenKind.REFRESH, {"sub": user.id, "sid": session_id})
        return TokenPair(
            access_token=self.issue_access(user, session_id),
            refresh_token=refresh,
            access_expires_at=now + self._ttls[TokenKind.ACCESS],
            refresh_expires_at=now + self._ttls[TokenKind.REFRESH],
        )

    def issue_access(self, user: User, session_id: str) -> str:
        return self.issue(
            TokenKind.ACCESS, {"sub": user.id, "email": user.email, "sid": session_id}
        )

    def issue_two_factor(self, user_id: str) -> str:
        return self.issue(TokenKind.TWO_FACTOR, {"sub": user_id})

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
