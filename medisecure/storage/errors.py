from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConcurrentUpdate(Exception):
    """Raised when a compare-and-set write loses to a concurrent writer."""

    def __init__(self, record: str, expected_version: int, actual_version: int):
        super().__init__(
            f"{record} changed concurrently (expected v{expected_version}, found v{actual_version})"
        )
        self.record = record
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = ["ConstraintViolation", "ConcurrentUpdate"]
