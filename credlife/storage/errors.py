from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when a backing store cannot be reached or rejects a command."""

    def __init__(self, message: str, *, backend: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


class StorageError(Exception):
    """Raised when a reachable store fails a command for any other reason.

    Covers bad data and schema drift: the driver accepted the connection but
    the statement itself errored.
    """

    def __init__(self, message: str, *, backend: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


__all__ = ["ConstraintViolation", "StorageError", "StorageUnavailable"]
