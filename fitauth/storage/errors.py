from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule was violated (duplicate email, unknown user)."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class SchemaMissing(RuntimeError):
    """The backing database lacks a table the store relies on."""


__all__ = ["ConstraintViolation", "SchemaMissing"]
