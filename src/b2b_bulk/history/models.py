"""Persisted bulk operation records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class BulkOperationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


TERMINAL_STATUSES = frozenset(
    {BulkOperationStatus.COMPLETED, BulkOperationStatus.FAILED, BulkOperationStatus.ROLLED_BACK}
)


class ItemStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class BulkOperationItem(BaseModel):
    sku: str
    quantity: int = Field(gt=0)
    price: float | None = None
    status: ItemStatus = ItemStatus.PENDING
    error: str | None = None
    order_id: str | None = None
    timestamp: datetime | None = None


class ReversedItem(BaseModel):
    index: int
    sku: str
    quantity: int
    order_id: str | None = None
    reversal_id: str | None = None


class RollbackData(BaseModel):
    order_ids: list[str] = Field(default_factory=list)
    reversal_ids: list[str] = Field(default_factory=list)
    rollback_at: datetime
    rollback_by: str
    reason: str
    errors: list[str] = Field(default_factory=list)


class BulkOperationRecord(BaseModel):
    id: str
    user_id: str
    account_id: str
    status: BulkOperationStatus = BulkOperationStatus.PENDING
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    total_value: float = 0.0
    items: list[BulkOperationItem] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    rollback_data: RollbackData | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class RollbackEligibility(BaseModel):
    eligible: bool
    reason: str | None = None
    message: str | None = None
    hours_remaining: float | None = None


class RollbackResult(BaseModel):
    success: bool
    operation_id: str
    reversed_items: list[ReversedItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
