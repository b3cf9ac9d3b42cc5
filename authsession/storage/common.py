"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from authsession.logging import get_logger

logger = get_logger(__name__)


def build_secret_cipher(key_material: str | None) -> Fernet:
    """Fernet cipher for two-factor secrets at rest.

    Key material comes from MFA_SECRET_KEY, falling back to the JWT secret so
    development setups work without extra configuration.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        raise RuntimeError("MFA encryption key missing; set MFA_SECRET_KEY or JWT_SECRET")
    digest = hashlib.sha256(material.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Key rotated since the secret was written; the user must re-enroll
        logger.warning("two_factor_secret_decrypt_failed")
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
