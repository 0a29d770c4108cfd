from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateIdentifier(ConstraintViolation):
    """A principal with the same normalized identifier already exists."""

    status_code = 409
    error_code = "conflict"


__all__ = ["ConstraintViolation", "DuplicateIdentifier"]
