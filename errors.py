from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    not_found = "not_found"
    validation_failed = "validation_failed"
    constraint_violation = "constraint_violation"
    duplicate_detected = "duplicate_detected"


class BlockingConstraint(str, Enum):
    """Reasons an account cannot be deleted."""

    live_transactions = "live_transactions"
    live_transfer_transactions = "live_transfer_transactions"
    active_recurring_rules = "active_recurring_rules"
    active_transfer_recurring_rules = "active_transfer_recurring_rules"
    active_savings_goals = "active_savings_goals"


_CONSTRAINT_MESSAGES: dict[BlockingConstraint, str] = {
    BlockingConstraint.live_transactions: "existing transactions",
    BlockingConstraint.live_transfer_transactions: "existing transfer transactions",
    BlockingConstraint.active_recurring_rules: "active recurring rules",
    BlockingConstraint.active_transfer_recurring_rules: (
        "active transfer recurring rules"
    ),
    BlockingConstraint.active_savings_goals: "active savings goals",
}


class LedgerError(ValueError):
    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(LedgerError):
    """Missing, soft-deleted, or owned by someone else.

    Foreign rows are reported exactly like missing ones.
    """

    kind = ErrorKind.not_found

    def __init__(self, entity: str) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity


class ValidationFailed(LedgerError):
    kind = ErrorKind.validation_failed

    def __init__(self, reason: str, *, field: Optional[str] = None) -> None:
        super().__init__(reason)
        self.field = field


class ConstraintViolation(LedgerError):
    kind = ErrorKind.constraint_violation

    def __init__(self, constraint: BlockingConstraint, entity: str = "account") -> None:
        detail = _CONSTRAINT_MESSAGES[constraint]
        super().__init__(f"Cannot delete {entity} with {detail}")
        self.constraint = constraint


class DuplicateDetected(LedgerError):
    kind = ErrorKind.duplicate_detected

    def __init__(self, message: str = "Potential duplicate transaction skipped") -> None:
        super().__init__(message)
