"""Operation history: per-item progress, terminal status, and rollback."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from b2b_bulk.audit.logger import AuditLogger
from b2b_bulk.audit.models import AuditEventType, AuditResult
from b2b_bulk.config import HistorySettings
from b2b_bulk.errors import (
    OperationNotFoundError,
    OperationStateError,
    RollbackIneligibility,
    RollbackIneligibleError,
)
from b2b_bulk.fulfillment.capabilities import OrderCanceller
from b2b_bulk.fulfillment.engine import ItemOutcome
from b2b_bulk.history.models import (
    BulkOperationItem,
    BulkOperationRecord,
    BulkOperationStatus,
    ItemStatus,
    ReversedItem,
    RollbackData,
    RollbackEligibility,
    RollbackResult,
)
from b2b_bulk.history.store import OperationRecordStore
from b2b_bulk.ingestion.models import LineItem
from b2b_bulk.utils.time import utc_now

logger = logging.getLogger(__name__)

_AUDITED_ROLLBACK_ERRORS = 5


class OperationHistory:
    """Owns every BulkOperationRecord from creation to rollback.

    Records are cached per id after the first read or write and written
    through to the per-user store on every change. Updates to one
    operation are serialized by a per-operation lock so concurrent item
    results never lose a counter increment.
    """

    def __init__(
        self,
        store: OperationRecordStore,
        audit: AuditLogger,
        *,
        rollback_window_hours: int = 24,
        retention_days: int = 90,
        max_records_per_user: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self._rollback_window = timedelta(hours=rollback_window_hours)
        self._rollback_window_hours = rollback_window_hours
        self._retention = timedelta(days=retention_days)
        self._max_records_per_user = max_records_per_user
        self._clock = clock
        self._cache: dict[str, BulkOperationRecord] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(
        cls,
        settings: HistorySettings,
        audit: AuditLogger,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> OperationHistory:
        return cls(
            OperationRecordStore(settings.storage_dir),
            audit,
            rollback_window_hours=settings.rollback_window_hours,
            retention_days=settings.retention_days,
            max_records_per_user=settings.max_records_per_user,
            clock=clock,
        )

    @property
    def rollback_window_hours(self) -> int:
        return self._rollback_window_hours

    async def create_operation(
        self,
        *,
        user_id: str,
        account_id: str,
        items: Sequence[LineItem],
        metadata: Mapping[str, Any] | None = None,
    ) -> BulkOperationRecord:
        now = self._clock()
        record = BulkOperationRecord(
            id=f"bulkop-{int(now.timestamp() * 1000)}-{uuid4().hex[:8]}",
            user_id=user_id,
            account_id=account_id,
            created_at=now,
            updated_at=now,
            total_items=len(items),
            items=[BulkOperationItem(sku=item.sku, quantity=item.quantity) for item in items],
            metadata=dict(metadata or {}),
        )
        self._persist(record)
        await self._audit.log_event(
            AuditEventType.BULK_UPLOAD_START,
            action="bulk_operation.create",
            user_id=user_id,
            account_id=account_id,
            details={"operation_id": record.id, "total_items": record.total_items},
            affected_records=[record.id],
        )
        logger.info("Created bulk operation %s with %d item(s)", record.id, record.total_items)
        return record

    async def mark_processing(self, operation_id: str) -> BulkOperationRecord:
        async with self._locks[operation_id]:
            record = self._require(operation_id)
            if record.status is BulkOperationStatus.PROCESSING:
                return record
            if record.status is not BulkOperationStatus.PENDING:
                raise OperationStateError(
                    f"Operation {operation_id} is {record.status.value}; cannot start processing"
                )
            record.status = BulkOperationStatus.PROCESSING
            record.updated_at = self._clock()
            self._persist(record)
            return record

    async def update_progress(
        self,
        operation_id: str,
        index: int,
        *,
        success: bool,
        price: float | None = None,
        error: str | None = None,
        order_id: str | None = None,
    ) -> BulkOperationRecord:
        async with self._locks[operation_id]:
            record = self._require(operation_id)
            if record.is_terminal:
                raise OperationStateError(
                    f"Operation {operation_id} is {record.status.value}; no further updates"
                )
            if not 0 <= index < len(record.items):
                raise OperationStateError(
                    f"Item index {index} out of range for operation {operation_id}"
                )
            item = record.items[index]
            if item.status is not ItemStatus.PENDING:
                raise OperationStateError(
                    f"Item {index} of operation {operation_id} is already {item.status.value}"
                )

            now = self._clock()
            item.status = ItemStatus.SUCCESS if success else ItemStatus.FAILED
            item.price = price
            item.error = error
            item.order_id = order_id
            item.timestamp = now

            record.status = BulkOperationStatus.PROCESSING
            record.processed_items += 1
            if success:
                record.successful_items += 1
                record.total_value = round(record.total_value + (price or 0.0) * item.quantity, 2)
            else:
                record.failed_items += 1
            record.updated_at = now

            finished = record.processed_items == record.total_items
            if finished:
                record.status = (
                    BulkOperationStatus.COMPLETED
                    if record.failed_items == 0
                    else BulkOperationStatus.FAILED
                )
                record.completed_at = now
            self._persist(record)

        if finished:
            await self._log_completion(record)
        return record

    async def get_record(self, operation_id: str) -> BulkOperationRecord | None:
        cached = self._cache.get(operation_id)
        if cached is not None:
            return cached
        try:
            record = self._store.find(operation_id)
        except ValueError:
            return None
        if record is not None:
            self._cache[record.id] = record
        return record

    async def list_user_operations(
        self,
        user_id: str,
        *,
        status: BulkOperationStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[BulkOperationRecord]:
        records = []
        for record in self._store.list_for_user(user_id):
            record = self._cache.get(record.id, record)
            if status is not None and record.status is not status:
                continue
            if start is not None and record.created_at < start:
                continue
            if end is not None and record.created_at > end:
                continue
            records.append(record)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit else records

    async def check_rollback_eligibility(self, operation_id: str) -> RollbackEligibility:
        record = await self.get_record(operation_id)
        return self._eligibility(operation_id, record)

    async def rollback_operation(
        self,
        operation_id: str,
        *,
        actor_id: str,
        reason: str,
        canceller: OrderCanceller,
    ) -> RollbackResult:
        """Compensate every successful item of a COMPLETED operation, once.

        Ineligible operations raise RollbackIneligibleError without issuing
        any compensating call. Compensation is sequential and keeps going
        past individual failures; the operation ends ROLLED_BACK either way.
        """
        async with self._locks[operation_id]:
            record = await self.get_record(operation_id)
            eligibility = self._eligibility(operation_id, record)
            if record is None or not eligibility.eligible:
                await self._audit.log_event(
                    AuditEventType.BULK_OPERATION_ROLLBACK,
                    action="bulk_operation.rollback",
                    result=AuditResult.FAILURE,
                    user_id=actor_id,
                    account_id=record.account_id if record else None,
                    details={
                        "operation_id": operation_id,
                        "ineligible": eligibility.reason,
                        "reason": reason,
                    },
                    affected_records=[operation_id],
                )
                raise RollbackIneligibleError(
                    operation_id,
                    RollbackIneligibility(eligibility.reason),
                    eligibility.message or "Operation cannot be rolled back",
                )
            reversed_items: list[ReversedItem] = []
            errors: list[str] = []
            for index, item in enumerate(record.items):
                if item.status is not ItemStatus.SUCCESS:
                    continue
                label = item.order_id or item.sku
                try:
                    outcome = await canceller.cancel_item(
                        account_id=record.account_id,
                        sku=item.sku,
                        quantity=item.quantity,
                        order_id=item.order_id,
                    )
                except Exception as exc:
                    errors.append(f"Error reversing {label}: {exc}")
                    continue
                if not outcome.success:
                    errors.append(f"Failed to reverse {label}: {outcome.error or 'unknown error'}")
                    continue
                reversed_items.append(
                    ReversedItem(
                        index=index,
                        sku=item.sku,
                        quantity=item.quantity,
                        order_id=item.order_id,
                        reversal_id=outcome.reversal_id or item.order_id,
                    )
                )

            now = self._clock()
            record.status = BulkOperationStatus.ROLLED_BACK
            record.updated_at = now
            record.rollback_data = RollbackData(
                order_ids=[i.order_id for i in record.items if i.order_id],
                reversal_ids=[r.reversal_id for r in reversed_items if r.reversal_id],
                rollback_at=now,
                rollback_by=actor_id,
                reason=reason,
                errors=errors,
            )
            self._persist(record)

        await self._audit.log_event(
            AuditEventType.BULK_OPERATION_ROLLBACK,
            action="bulk_operation.rollback",
            result=AuditResult.SUCCESS if not errors else AuditResult.FAILURE,
            user_id=actor_id,
            account_id=record.account_id,
            details={
                "operation_id": operation_id,
                "reversed_items": len(reversed_items),
                "successful_items": record.successful_items,
                "errors": errors[:_AUDITED_ROLLBACK_ERRORS],
                "reason": reason,
            },
            affected_records=[operation_id],
        )
        logger.info(
            "Rolled back operation %s reversed=%d errors=%d",
            operation_id,
            len(reversed_items),
            len(errors),
        )
        return RollbackResult(
            success=not errors,
            operation_id=operation_id,
            reversed_items=reversed_items,
            errors=errors,
        )

    async def cleanup_old_records(self) -> int:
        """Delete records past retention and trim each user to the newest N."""
        cutoff = self._clock() - self._retention
        by_user: defaultdict[str, list[BulkOperationRecord]] = defaultdict(list)
        for record in self._store.iter_all():
            by_user[record.user_id].append(record)

        deleted = 0
        for records in by_user.values():
            records.sort(key=lambda r: r.created_at, reverse=True)
            for position, record in enumerate(records):
                if record.created_at >= cutoff and position < self._max_records_per_user:
                    continue
                if self._store.delete(record):
                    deleted += 1
                self._cache.pop(record.id, None)
                self._locks.pop(record.id, None)
        if deleted:
            logger.info("Operation history cleanup removed %d record(s)", deleted)
        return deleted

    def _eligibility(
        self, operation_id: str, record: BulkOperationRecord | None
    ) -> RollbackEligibility:
        if record is None:
            return RollbackEligibility(
                eligible=False,
                reason=RollbackIneligibility.NOT_FOUND.value,
                message=f"Operation {operation_id} not found",
            )
        if record.status is BulkOperationStatus.ROLLED_BACK or record.rollback_data is not None:
            return RollbackEligibility(
                eligible=False,
                reason=RollbackIneligibility.ALREADY_ROLLED_BACK.value,
                message="Operation has already been rolled back",
            )
        if record.status is not BulkOperationStatus.COMPLETED or record.completed_at is None:
            return RollbackEligibility(
                eligible=False,
                reason=RollbackIneligibility.NOT_COMPLETED.value,
                message="Only completed operations can be rolled back",
            )
        elapsed = self._clock() - record.completed_at
        if elapsed > self._rollback_window:
            return RollbackEligibility(
                eligible=False,
                reason=RollbackIneligibility.WINDOW_EXPIRED.value,
                message=f"Rollback window ({self._rollback_window_hours} hours) has expired",
            )
        remaining = (self._rollback_window - elapsed).total_seconds() / 3600
        return RollbackEligibility(eligible=True, hours_remaining=round(remaining, 2))

    async def _log_completion(self, record: BulkOperationRecord) -> None:
        completed = record.status is BulkOperationStatus.COMPLETED
        duration_ms = int((record.completed_at - record.created_at).total_seconds() * 1000)
        await self._audit.log_event(
            AuditEventType.BULK_UPLOAD_SUCCESS if completed else AuditEventType.BULK_UPLOAD_FAILURE,
            action="bulk_operation.complete",
            result=AuditResult.SUCCESS if completed else AuditResult.FAILURE,
            user_id=record.user_id,
            account_id=record.account_id,
            details={
                "operation_id": record.id,
                "total_items": record.total_items,
                "successful_items": record.successful_items,
                "failed_items": record.failed_items,
                "total_value": record.total_value,
                "duration_ms": duration_ms,
            },
            affected_records=[record.id],
        )

    def _require(self, operation_id: str) -> BulkOperationRecord:
        record = self._cache.get(operation_id)
        if record is None:
            try:
                record = self._store.find(operation_id)
            except ValueError:
                record = None
            if record is None:
                raise OperationNotFoundError(operation_id)
            self._cache[operation_id] = record
        return record

    def _persist(self, record: BulkOperationRecord) -> None:
        self._store.save(record)
        self._cache[record.id] = record


class HistoryProgressRecorder:
    """Feeds engine item outcomes into an operation's history record."""

    def __init__(self, history: OperationHistory, operation_id: str) -> None:
        self._history = history
        self._operation_id = operation_id

    async def record_item(self, outcome: ItemOutcome) -> None:
        await self._history.update_progress(
            self._operation_id,
            outcome.index,
            success=outcome.success,
            price=outcome.price,
            error=outcome.error,
            order_id=outcome.order_id,
        )
