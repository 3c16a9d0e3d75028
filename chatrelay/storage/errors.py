from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected a write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StoreUnavailable(Exception):
    """The datastore could not be reached or refused the operation."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]
