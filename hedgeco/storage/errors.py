from __future__ import annotations

from typing import Any, Dict, Optional

import psycopg


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the backing database cannot be reached or fails mid-operation."""


# Everything a store call may raise when the database, not the caller, is at fault
STORAGE_FAILURES = (StorageUnavailable, psycopg.Error)


__all__ = ["ConstraintViolation", "StorageUnavailable", "STORAGE_FAILURES"]
