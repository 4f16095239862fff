"""Batched, concurrency-bounded fulfillment of validated line items."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from b2b_bulk.config import FulfillmentSettings
from b2b_bulk.fulfillment.capabilities import (
    AlternativeFinder,
    AlternativeSuggestion,
    AvailabilityChecker,
    CartLine,
    CartMutator,
    ProductAvailability,
)
from b2b_bulk.fulfillment.progress import (
    BatchCompleted,
    BatchStarted,
    CancellationToken,
    ItemProcessed,
    ProcessingCompleted,
    ProgressChannel,
)
from b2b_bulk.ingestion.models import PRIORITY_RANK, LineItem
from b2b_bulk.policy.models import AuthorizationResult

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"
LIMIT_EXCEEDED_ERROR = "Order limit exceeded"
_AVAILABILITY_ATTEMPTS = 2


@dataclass(frozen=True)
class EngineConfig:
    batch_size: int = 10
    max_concurrent: int = 5
    enable_alternatives: bool = True
    respect_priority: bool = True

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

    @classmethod
    def from_settings(cls, settings: FulfillmentSettings) -> EngineConfig:
        return cls(
            batch_size=settings.batch_size,
            max_concurrent=settings.max_concurrent,
            enable_alternatives=settings.enable_alternatives,
        )


@dataclass(frozen=True)
class ItemOutcome:
    index: int
    sku: str
    quantity: int
    success: bool
    price: float | None = None
    error: str | None = None
    order_id: str | None = None

    @property
    def value(self) -> float:
        if not self.success or self.price is None:
            return 0.0
        return self.price * self.quantity


@dataclass(frozen=True)
class ItemError:
    index: int
    sku: str
    quantity: int
    error: str
    suggestion: AlternativeSuggestion | None = None
    kind: str = "fulfillment"


@dataclass
class BulkProcessingResult:
    success: bool
    items_processed: int
    items_added: int
    items_failed: int
    total_quantity: int
    total_value: float
    errors: list[ItemError] = field(default_factory=list)
    suggestions: dict[str, list[AlternativeSuggestion]] = field(default_factory=dict)
    outcomes: list[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False
    limit_denial: AuthorizationResult | None = None
    processing_time_ms: int = 0


class ItemRecorder(Protocol):
    """Receives each resolved item, in input order within a batch."""

    async def record_item(self, outcome: ItemOutcome) -> None: ...


class SpendGuard(Protocol):
    """Approves the priced order value before a batch is committed to the cart.

    ``order_value`` is the value already added plus the batch about to be added.
    """

    async def check_order_value(self, order_value: float) -> AuthorizationResult: ...


@dataclass
class _Checked:
    index: int
    item: LineItem
    availability: ProductAvailability | None
    error: str | None


class BatchFulfillmentEngine:
    """Adds line items to a cart through injected backend capabilities.

    Batches run one after another. Inside a batch, availability checks run
    concurrently up to ``max_concurrent`` and the ready items go to the
    backend in a single cart call. Outcomes are addressed by the item's
    original index, so results come back in input order whatever order the
    checks finish in.
    """

    def __init__(
        self,
        *,
        availability: AvailabilityChecker,
        cart: CartMutator,
        alternatives: AlternativeFinder | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._availability = availability
        self._cart = cart
        self._alternatives = alternatives
        self._config = config or EngineConfig()

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def process(
        self,
        items: Sequence[LineItem],
        *,
        recorder: ItemRecorder | None = None,
        progress: ProgressChannel | None = None,
        cancel_token: CancellationToken | None = None,
        enable_alternatives: bool | None = None,
        spend_guard: SpendGuard | None = None,
    ) -> BulkProcessingResult:
        started = time.monotonic()
        if enable_alternatives is None:
            enable_alternatives = self._config.enable_alternatives
        finder = self._alternatives if enable_alternatives else None

        order = list(range(len(items)))
        if self._config.respect_priority:
            order.sort(key=lambda i: PRIORITY_RANK[items[i].priority])
        size = self._config.batch_size
        batches = [order[start : start + size] for start in range(0, len(order), size)]

        outcomes: list[ItemOutcome | None] = [None] * len(items)
        errors: dict[int, ItemError] = {}
        suggestions: dict[str, list[AlternativeSuggestion]] = {}
        semaphore = asyncio.Semaphore(self._config.max_concurrent)
        cancelled = False
        denial: AuthorizationResult | None = None
        committed_value = 0.0

        for batch_index, batch in enumerate(batches):
            skipped = [i for rest in batches[batch_index:] for i in rest]
            if denial is not None:
                message = _limit_message(denial)
                await self._skip(
                    items, skipped, message, "limit", outcomes, errors, recorder, progress
                )
                break
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                logger.info(
                    "Bulk processing cancelled before batch %d/%d (%s)",
                    batch_index + 1,
                    len(batches),
                    cancel_token.reason or "no reason given",
                )
                await self._skip(
                    items, skipped, CANCELLED_ERROR, "fulfillment", outcomes, errors,
                    recorder, progress
                )
                break

            if progress is not None:
                progress.publish(BatchStarted(batch_index, len(batches), len(batch)))

            batch_outcomes, denial = await self._process_batch(
                items,
                batch,
                semaphore,
                finder,
                errors,
                suggestions,
                spend_guard,
                committed_value,
            )
            committed_value += sum(o.value for o in batch_outcomes)
            for outcome in sorted(batch_outcomes, key=lambda o: o.index):
                outcomes[outcome.index] = outcome
                await self._emit(outcome, recorder, progress)

            if progress is not None:
                batch_added = sum(1 for o in batch_outcomes if o.success)
                failed = len(batch_outcomes) - batch_added
                progress.publish(
                    BatchCompleted(batch_index, len(batches), batch_added, failed)
                )

        resolved = [o for o in outcomes if o is not None]
        added = [o for o in resolved if o.success]
        result = BulkProcessingResult(
            success=bool(resolved) and len(added) == len(resolved),
            items_processed=len(resolved),
            items_added=len(added),
            items_failed=len(resolved) - len(added),
            total_quantity=sum(o.quantity for o in added),
            total_value=round(sum(o.value for o in added), 2),
            errors=[errors[i] for i in sorted(errors)],
            suggestions=suggestions,
            outcomes=resolved,
            cancelled=cancelled,
            limit_denial=denial,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        if progress is not None:
            progress.publish(
                ProcessingCompleted(
                    result.items_processed, result.items_added, result.items_failed, cancelled
                )
            )
        logger.info(
            "Bulk processing finished processed=%d added=%d failed=%d cancelled=%s",
            result.items_processed,
            result.items_added,
            result.items_failed,
            cancelled,
        )
        return result

    async def _process_batch(
        self,
        items: Sequence[LineItem],
        batch: list[int],
        semaphore: asyncio.Semaphore,
        finder: AlternativeFinder | None,
        errors: dict[int, ItemError],
        suggestions: dict[str, list[AlternativeSuggestion]],
        spend_guard: SpendGuard | None,
        committed_value: float,
    ) -> tuple[list[ItemOutcome], AuthorizationResult | None]:
        async def check(index: int) -> _Checked:
            async with semaphore:
                return await self._check_item(index, items[index])

        checked = await asyncio.gather(*(check(index) for index in batch))
        ready = [c for c in checked if c.error is None]
        outcomes: list[ItemOutcome] = []

        for entry in checked:
            if entry.error is None:
                continue
            alternatives: list[AlternativeSuggestion] = []
            if finder is not None:
                alternatives = await _find_alternatives(finder, entry.item)
                suggestions[entry.item.sku] = alternatives
            errors[entry.index] = ItemError(
                entry.index,
                entry.item.sku,
                entry.item.quantity,
                entry.error,
                alternatives[0] if alternatives else None,
            )
            outcomes.append(
                ItemOutcome(
                    index=entry.index,
                    sku=entry.item.sku,
                    quantity=entry.item.quantity,
                    success=False,
                    error=entry.error,
                )
            )

        if not ready:
            return outcomes, None

        lines = [
            CartLine(sku=c.item.sku, quantity=c.item.quantity, price=c.availability.price)
            for c in ready
            if c.availability is not None
        ]
        if spend_guard is not None:
            batch_value = sum((line.price or 0.0) * line.quantity for line in lines)
            decision = await spend_guard.check_order_value(
                round(committed_value + batch_value, 2)
            )
            if not decision.allowed:
                logger.info(
                    "Order limit reached before cart update limit_type=%s requested=%s",
                    decision.limit_type.value if decision.limit_type else None,
                    decision.requested_amount,
                )
                _fail_ready(ready, _limit_message(decision), "limit", errors, outcomes)
                return outcomes, decision

        try:
            order_ids = await self._cart.add_to_cart(lines) or {}
        except Exception as exc:
            logger.warning("Cart update failed for batch of %d item(s): %s", len(ready), exc)
            _fail_ready(ready, f"Failed to add to cart: {exc}", "fulfillment", errors, outcomes)
            return outcomes, None

        for entry in ready:
            outcomes.append(
                ItemOutcome(
                    index=entry.index,
                    sku=entry.item.sku,
                    quantity=entry.item.quantity,
                    success=True,
                    price=entry.availability.price if entry.availability else None,
                    order_id=order_ids.get(entry.item.sku),
                )
            )
        return outcomes, None

    async def _check_item(self, index: int, item: LineItem) -> _Checked:
        last_error: Exception | None = None
        for attempt in range(_AVAILABILITY_ATTEMPTS):
            try:
                availability = await self._availability.check_availability(item.sku)
            except Exception as exc:
                last_error = exc
                logger.debug(
                    "Availability check for %s failed (attempt %d): %s", item.sku, attempt + 1, exc
                )
                continue
            if not availability.available or availability.quantity <= 0:
                return _Checked(index, item, availability, "Product not available")
            if availability.quantity < item.quantity:
                return _Checked(
                    index,
                    item,
                    availability,
                    f"Only {availability.quantity} units available "
                    f"out of {item.quantity} requested",
                )
            return _Checked(index, item, availability, None)
        return _Checked(index, item, None, f"Availability check failed: {last_error}")

    async def _skip(
        self,
        items: Sequence[LineItem],
        indices: list[int],
        message: str,
        kind: str,
        outcomes: list[ItemOutcome | None],
        errors: dict[int, ItemError],
        recorder: ItemRecorder | None,
        progress: ProgressChannel | None,
    ) -> None:
        """Fail items that will never reach the backend."""
        for index in sorted(indices):
            item = items[index]
            outcome = ItemOutcome(
                index=index, sku=item.sku, quantity=item.quantity, success=False, error=message
            )
            outcomes[index] = outcome
            errors[index] = ItemError(index, item.sku, item.quantity, message, kind=kind)
            await self._emit(outcome, recorder, progress)

    @staticmethod
    async def _emit(
        outcome: ItemOutcome,
        recorder: ItemRecorder | None,
        progress: ProgressChannel | None,
    ) -> None:
        if recorder is not None:
            await recorder.record_item(outcome)
        if progress is not None:
            progress.publish(
                ItemProcessed(outcome.index, outcome.sku, outcome.success, outcome.error)
            )


def _limit_message(decision: AuthorizationResult) -> str:
    return f"{LIMIT_EXCEEDED_ERROR}: {decision.reason or 'not authorized'}"


def _fail_ready(
    ready: list[_Checked],
    message: str,
    kind: str,
    errors: dict[int, ItemError],
    outcomes: list[ItemOutcome],
) -> None:
    for entry in ready:
        errors[entry.index] = ItemError(
            entry.index, entry.item.sku, entry.item.quantity, message, kind=kind
        )
        outcomes.append(
            ItemOutcome(
                index=entry.index,
                sku=entry.item.sku,
                quantity=entry.item.quantity,
                success=False,
                error=message,
            )
        )


async def _find_alternatives(
    finder: AlternativeFinder, item: LineItem
) -> list[AlternativeSuggestion]:
    try:
        found = await finder.find_alternatives(item.sku, item.quantity)
    except Exception as exc:
        logger.warning("Alternative lookup failed for %s: %s", item.sku, exc)
        return []
    return sorted(found, key=lambda s: s.similarity, reverse=True)
