from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateIdentity(ConstraintViolation):
    """An account with the same (case-insensitive) email already exists.

    Raised by the write itself, so it is authoritative even when an earlier
    existence check saw no conflict.
    """

    def __init__(self, email: str):
        super().__init__("email already exists", {"field": "email"})
        self.email = email


__all__ = ["ConstraintViolation", "DuplicateIdentity"]
