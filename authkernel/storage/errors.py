from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(Exception):
    """Raised when a store call exceeds its bounded wait.

    Nothing was committed; the caller may retry.
    """

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"store operation '{operation}' timed out after {timeout_seconds}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


__all__ = ["ConstraintViolation", "StoreTimeout"]
