from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransactionTimeout(Exception):
    """The enclosing transaction ran past its deadline and was rolled back."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"transaction exceeded {timeout_seconds:.1f}s")
        self.timeout_seconds = timeout_seconds


__all__ = ["ConstraintViolation", "TransactionTimeout"]
