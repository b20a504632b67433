from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated.

    ``detail`` carries the offending field (``{"field": "email"}``) so callers
    can tell an identifier clash from an email clash.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(RuntimeError):
    """Raised at startup when the database lacks the auth tables."""


__all__ = ["ConstraintViolation", "SchemaMissingError"]
