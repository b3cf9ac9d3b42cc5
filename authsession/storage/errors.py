from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for record-store failures; carries a message and structured detail."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write (e.g. duplicate email)."""


class RecordNotFound(StorageError):
    """An update targeted a user or session row that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
