"""Errors raised by the credential stores."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A live user, role, permission or menu already holds a unique value.

    ``detail["field"]`` names the clashing column when the store can tell.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
