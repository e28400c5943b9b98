from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint (e.g. user email) is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached in time (pool exhausted, connection lost).

    Callers should treat this as retryable, unlike constraint failures.
    """

    def __init__(self, operation: str, reason: str = "") -> None:
        super().__init__(f"{operation}: {reason}" if reason else operation)
        self.operation = operation
        self.reason = reason


__all__ = ["ConstraintViolation", "StoreUnavailable"]
