from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for durable store failures surfaced to the service layer."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness constraint (normalized email, provider link) was violated."""


class RecordNotFound(StorageError):
    """An update targeted a row that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
