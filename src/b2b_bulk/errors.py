"""Exception types raised by the bulk-order subsystem.

Row- and item-level problems are never raised; they are accumulated into
result objects. The exceptions here cover lifecycle and state failures the
caller has to handle explicitly.
"""

from __future__ import annotations

from enum import Enum


class BulkOrderError(Exception):
    """Base class for subsystem errors."""


class AuditLogInitError(BulkOrderError):
    """The audit store could not be created or opened.

    Fatal: bulk operations must not run without an audit trail.
    """


class PolicyConfigError(BulkOrderError, ValueError):
    """Role policy or SKU pattern configuration is invalid or unsafe."""


class OperationNotFoundError(BulkOrderError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Bulk operation not found: {operation_id}")
        self.operation_id = operation_id


class OperationStateError(BulkOrderError):
    """An update would violate the operation state machine."""


class RollbackIneligibility(str, Enum):
    NOT_FOUND = "not_found"
    NOT_COMPLETED = "not_completed"
    ALREADY_ROLLED_BACK = "already_rolled_back"
    WINDOW_EXPIRED = "window_expired"


class RollbackIneligibleError(BulkOrderError):
    def __init__(self, operation_id: str, reason: RollbackIneligibility, message: str) -> None:
        super().__init__(message)
        self.operation_id = operation_id
        self.reason = reason
        self.message = message
