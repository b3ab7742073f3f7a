from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateTokenValue(ConstraintViolation):
    """A refresh token value or record id is already stored."""

    def __init__(self, record_id: str):
        super().__init__("refresh token already exists", {"record_id": record_id})


class UnknownOwner(ConstraintViolation):
    """A refresh token references a principal the store does not know."""

    def __init__(self, owner_id: str):
        super().__init__("refresh token owner missing", {"owner_id": owner_id})


__all__ = ["ConstraintViolation", "DuplicateTokenValue", "UnknownOwner"]
