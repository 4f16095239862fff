from __future__ import annotations

import asyncio

import pytest

from b2b_bulk.config import FulfillmentSettings
from b2b_bulk.fulfillment.capabilities import AlternativeSuggestion, ProductAvailability
from b2b_bulk.fulfillment.engine import (
    CANCELLED_ERROR,
    LIMIT_EXCEEDED_ERROR,
    BatchFulfillmentEngine,
    EngineConfig,
    ItemOutcome,
)
from b2b_bulk.fulfillment.progress import (
    BatchCompleted,
    BatchStarted,
    CancellationToken,
    ItemProcessed,
    ProcessingCompleted,
    ProgressChannel,
)
from b2b_bulk.ingestion.models import LineItem, Priority
from b2b_bulk.policy.models import AuthorizationResult, LimitType


def _alt(sku: str, similarity: float) -> AlternativeSuggestion:
    return AlternativeSuggestion(
        sku=sku, name=sku, similarity=similarity, available=True, price=1.0, reason="test"
    )


def _engine(backend, **config) -> BatchFulfillmentEngine:
    return BatchFulfillmentEngine(
        availability=backend,
        cart=backend,
        alternatives=backend,
        config=EngineConfig(**config),
    )


class _Recorder:
    def __init__(self) -> None:
        self.outcomes: list[ItemOutcome] = []

    async def record_item(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)


@pytest.mark.asyncio
async def test_partial_availability_adds_available_items_and_suggests_alternatives(backend):
    backend.alternatives["SKU-404"] = [_alt("ALT-B", 0.5), _alt("ALT-A", 0.9)]
    items = [
        LineItem(sku="SKU-001", quantity=10),
        LineItem(sku="SKU-404", quantity=1),
        LineItem(sku="SKU-002", quantity=5),
    ]

    result = await _engine(backend).process(items)

    assert result.success is False
    assert (result.items_processed, result.items_added, result.items_failed) == (3, 2, 1)
    assert result.total_quantity == 15
    assert result.total_value == 75.0
    assert list(result.suggestions) == ["SKU-404"]
    assert [s.sku for s in result.suggestions["SKU-404"]] == ["ALT-A", "ALT-B"]
    [error] = result.errors
    assert error.sku == "SKU-404"
    assert error.index == 1
    assert error.error == "Product not available"
    assert error.suggestion.sku == "ALT-A"
    assert [o.index for o in result.outcomes] == [0, 1, 2]


@pytest.mark.asyncio
async def test_insufficient_stock_message(backend):
    result = await _engine(backend).process([LineItem(sku="SKU-003", quantity=8)])

    assert result.errors[0].error == "Only 5 units available out of 8 requested"
    assert backend.cart_calls == []


@pytest.mark.asyncio
async def test_all_available_items_succeed_with_order_ids(backend):
    recorder = _Recorder()

    result = await _engine(backend).process(
        [LineItem(sku="SKU-001", quantity=1), LineItem(sku="SKU-002", quantity=2)],
        recorder=recorder,
    )

    assert result.success is True
    assert result.errors == []
    assert result.suggestions == {}
    assert [o.order_id for o in recorder.outcomes] == ["order-SKU-001", "order-SKU-002"]
    assert len(backend.cart_calls) == 1


@pytest.mark.asyncio
async def test_batches_split_items_and_respect_priority(backend):
    items = [
        LineItem(sku="SKU-001", quantity=1, priority=Priority.LOW),
        LineItem(sku="SKU-002", quantity=1, priority=Priority.NORMAL),
        LineItem(sku="SKU-003", quantity=1, priority=Priority.HIGH),
        LineItem(sku="SKU-001", quantity=2, priority=Priority.HIGH),
        LineItem(sku="SKU-002", quantity=2, priority=Priority.LOW),
    ]

    await _engine(backend, batch_size=2).process(items)

    batches = [[(line.sku, line.quantity) for line in call] for call in backend.cart_calls]
    assert batches == [
        [("SKU-003", 1), ("SKU-001", 2)],
        [("SKU-002", 1), ("SKU-001", 1)],
        [("SKU-002", 2)],
    ]


@pytest.mark.asyncio
async def test_priority_can_be_ignored(backend):
    items = [
        LineItem(sku="SKU-001", quantity=1, priority=Priority.LOW),
        LineItem(sku="SKU-002", quantity=1, priority=Priority.HIGH),
    ]

    await _engine(backend, batch_size=1, respect_priority=False).process(items)

    assert [call[0].sku for call in backend.cart_calls] == ["SKU-001", "SKU-002"]


@pytest.mark.asyncio
async def test_cart_failure_fails_every_ready_item_in_batch(backend):
    backend.fail_cart = True

    result = await _engine(backend).process(
        [LineItem(sku="SKU-001", quantity=1), LineItem(sku="SKU-002", quantity=1)]
    )

    assert result.items_added == 0
    assert [e.error for e in result.errors] == [
        "Failed to add to cart: cart service unavailable",
        "Failed to add to cart: cart service unavailable",
    ]


@pytest.mark.asyncio
async def test_availability_errors_are_retried_once(backend):
    backend.fail_availability = {"SKU-001": 1, "SKU-002": 2}

    result = await _engine(backend).process(
        [LineItem(sku="SKU-001", quantity=1), LineItem(sku="SKU-002", quantity=1)]
    )

    assert result.items_added == 1
    [error] = result.errors
    assert error.sku == "SKU-002"
    assert error.error == "Availability check failed: backend timeout"


@pytest.mark.asyncio
async def test_alternatives_can_be_disabled_per_call(backend):
    backend.alternatives["SKU-404"] = [_alt("ALT-A", 0.9)]

    result = await _engine(backend).process(
        [LineItem(sku="SKU-404", quantity=1)], enable_alternatives=False
    )

    assert result.suggestions == {}
    assert result.errors[0].suggestion is None


@pytest.mark.asyncio
async def test_failed_alternative_lookup_still_reports_item(backend):
    async def broken(sku: str, quantity: int):
        raise RuntimeError("catalog offline")

    backend.find_alternatives = broken

    result = await _engine(backend).process([LineItem(sku="SKU-404", quantity=1)])

    assert result.suggestions == {"SKU-404": []}
    assert result.errors[0].error == "Product not available"


@pytest.mark.asyncio
async def test_concurrency_is_bounded(backend):
    in_flight = 0
    peak = 0

    class _SlowChecker:
        async def check_availability(self, sku: str) -> ProductAvailability:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return ProductAvailability(sku=sku, available=True, quantity=100, price=1.0)

    engine = BatchFulfillmentEngine(
        availability=_SlowChecker(),
        cart=backend,
        config=EngineConfig(batch_size=20, max_concurrent=3),
    )

    result = await engine.process([LineItem(sku=f"SKU-{n}", quantity=1) for n in range(12)])

    assert result.items_added == 12
    assert peak == 3


@pytest.mark.asyncio
async def test_outcomes_follow_input_order_when_checks_finish_out_of_order(backend):
    delays = {"SKU-001": 0.03, "SKU-002": 0.0, "SKU-003": 0.01}

    class _Staggered:
        async def check_availability(self, sku: str) -> ProductAvailability:
            await asyncio.sleep(delays[sku])
            return ProductAvailability(sku=sku, available=True, quantity=100, price=2.0)

    recorder = _Recorder()
    engine = BatchFulfillmentEngine(availability=_Staggered(), cart=backend)

    await engine.process(
        [LineItem(sku=sku, quantity=1) for sku in ("SKU-001", "SKU-002", "SKU-003")],
        recorder=recorder,
    )

    assert [o.sku for o in recorder.outcomes] == ["SKU-001", "SKU-002", "SKU-003"]


@pytest.mark.asyncio
async def test_cancellation_between_batches_marks_remaining_items(backend):
    token = CancellationToken()

    class _CancelAfterFirst(_Recorder):
        async def record_item(self, outcome: ItemOutcome) -> None:
            await super().record_item(outcome)
            token.cancel("user requested")

    recorder = _CancelAfterFirst()
    items = [LineItem(sku="SKU-001", quantity=1) for _ in range(3)]

    result = await _engine(backend, batch_size=1).process(
        items, recorder=recorder, cancel_token=token
    )

    assert result.cancelled is True
    assert result.items_added == 1
    assert result.items_failed == 2
    assert [o.error for o in recorder.outcomes] == [None, CANCELLED_ERROR, CANCELLED_ERROR]
    assert len(backend.cart_calls) == 1


@pytest.mark.asyncio
async def test_progress_events_describe_each_batch(backend):
    channel = ProgressChannel()
    items = [LineItem(sku="SKU-001", quantity=1), LineItem(sku="SKU-404", quantity=1)]

    await _engine(backend, batch_size=1).process(items, progress=channel)
    events = channel.drain()

    assert [type(e) for e in events] == [
        BatchStarted,
        ItemProcessed,
        BatchCompleted,
        BatchStarted,
        ItemProcessed,
        BatchCompleted,
        ProcessingCompleted,
    ]
    assert events[0] == BatchStarted(batch_index=0, total_batches=2, item_count=1)
    assert events[5] == BatchCompleted(1, 2, items_added=0, items_failed=1)
    assert events[-1] == ProcessingCompleted(2, 1, 1, cancelled=False)


@pytest.mark.asyncio
async def test_empty_input_is_not_a_success(backend):
    result = await _engine(backend).process([])

    assert result.success is False
    assert result.items_processed == 0


def test_engine_config_validation_and_settings():
    with pytest.raises(ValueError):
        EngineConfig(batch_size=0)
    with pytest.raises(ValueError):
        EngineConfig(max_concurrent=0)

    config = EngineConfig.from_settings(
        FulfillmentSettings(batch_size=25, max_concurrent=2, enable_alternatives=False)
    )

    assert (config.batch_size, config.max_concurrent, config.enable_alternatives) == (25, 2, False)


class _ValueCap:
    def __init__(self, cap: float) -> None:
        self.cap = cap
        self.checked: list[float] = []

    async def check_order_value(self, order_value: float) -> AuthorizationResult:
        self.checked.append(order_value)
        if order_value <= self.cap:
            return AuthorizationResult(allowed=True)
        return AuthorizationResult(
            allowed=False,
            reason="Order value exceeds single order limit",
            limit_type=LimitType.SINGLE_ORDER_VALUE,
            current_limit=self.cap,
            requested_amount=order_value,
        )


@pytest.mark.asyncio
async def test_spend_guard_stops_cart_updates_once_priced_value_exceeds_limit(backend):
    guard = _ValueCap(5.0)
    recorder = _Recorder()
    items = [LineItem(sku="SKU-001", quantity=2) for _ in range(3)]

    result = await _engine(backend, batch_size=1).process(
        items, recorder=recorder, spend_guard=guard
    )

    assert guard.checked == [5.0, 10.0]
    assert len(backend.cart_calls) == 1
    assert backend.availability_calls == ["SKU-001", "SKU-001"]
    assert (result.items_added, result.items_failed) == (1, 2)
    assert result.total_value == 5.0
    assert result.limit_denial.limit_type is LimitType.SINGLE_ORDER_VALUE
    assert result.limit_denial.requested_amount == 10.0
    assert [e.kind for e in result.errors] == ["limit", "limit"]
    assert all(e.error.startswith(LIMIT_EXCEEDED_ERROR) for e in result.errors)
    assert [o.success for o in recorder.outcomes] == [True, False, False]


@pytest.mark.asyncio
async def test_spend_guard_within_limit_changes_nothing(backend):
    guard = _ValueCap(1_000.0)

    result = await _engine(backend).process(
        [LineItem(sku="SKU-001", quantity=4), LineItem(sku="SKU-002", quantity=1)],
        spend_guard=guard,
    )

    assert result.success is True
    assert result.limit_denial is None
    assert guard.checked == [20.0]
