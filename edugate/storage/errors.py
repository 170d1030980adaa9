from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Transient failure talking to the credential store; safe to retry."""


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
