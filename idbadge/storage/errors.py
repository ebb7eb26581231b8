from __future__ import annotations

from typing import Any, Dict, List, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer write is rejected by the store itself."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConditionalCheckFailed(ConstraintViolation):
    """A single-item write's precondition did not hold."""

    def __init__(self, table: str, key: str):
        super().__init__(
            f"condition failed on {table}/{key}", {"table": table, "key": key}
        )
        self.table = table
        self.key = key


class TransactionCanceled(ConstraintViolation):
    """A multi-item transaction was rejected as a whole.

    ``reasons`` lines up with the transaction's operations: ``None`` for an
    operation that was fine, ``"ConditionalCheckFailed"`` for the one(s) whose
    precondition failed.
    """

    CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailed"

    def __init__(self, reasons: List[Optional[str]]):
        super().__init__("transaction canceled", {"reasons": reasons})
        self.reasons = reasons

    def failed_at(self, index: int) -> bool:
        return (
            0 <= index < len(self.reasons)
            and self.reasons[index] == self.CONDITIONAL_CHECK_FAILED
        )


__all__ = ["ConstraintViolation", "ConditionalCheckFailed", "TransactionCanceled"]
