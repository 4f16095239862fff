from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime, timezone

import pytest

from b2b_bulk.audit.logger import AuditLogger
from b2b_bulk.audit.store import JsonlFileLogStore
from b2b_bulk.auth.context import B2BUserContext, CustomLimits
from b2b_bulk.fulfillment.capabilities import (
    AlternativeSuggestion,
    CancellationResult,
    CartLine,
    ProductAvailability,
)
from b2b_bulk.policy.models import default_role_policy

TEST_SECRET = "test-audit-secret"


class FakeClock:
    """Settable clock for components that take ``clock=``."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)


class FakeBackend:
    """In-memory commerce backend implementing every capability protocol."""

    def __init__(
        self,
        stock: Mapping[str, tuple[int, float]] | None = None,
        alternatives: Mapping[str, Sequence[AlternativeSuggestion]] | None = None,
    ) -> None:
        self.stock = dict(stock or {})
        self.alternatives = dict(alternatives or {})
        self.availability_calls: list[str] = []
        self.cart_calls: list[list[CartLine]] = []
        self.cancel_calls: list[dict[str, object]] = []
        self.fail_cart = False
        self.fail_availability: dict[str, int] = {}
        self.fail_cancel_skus: set[str] = set()

    async def check_availability(self, sku: str) -> ProductAvailability:
        self.availability_calls.append(sku)
        remaining = self.fail_availability.get(sku, 0)
        if remaining:
            self.fail_availability[sku] = remaining - 1
            raise ConnectionError("backend timeout")
        await asyncio.sleep(0)
        if sku not in self.stock:
            return ProductAvailability(sku=sku, available=False, quantity=0)
        quantity, price = self.stock[sku]
        return ProductAvailability(
            sku=sku, available=quantity > 0, quantity=quantity, price=price, name=sku.title()
        )

    async def find_alternatives(self, sku: str, quantity: int) -> list[AlternativeSuggestion]:
        return list(self.alternatives.get(sku, []))

    async def add_to_cart(self, lines: Sequence[CartLine]) -> dict[str, str]:
        if self.fail_cart:
            raise RuntimeError("cart service unavailable")
        self.cart_calls.append(list(lines))
        return {line.sku: f"order-{line.sku}" for line in lines}

    async def cancel_item(
        self,
        *,
        account_id: str,
        sku: str,
        quantity: int,
        order_id: str | None,
    ) -> CancellationResult:
        self.cancel_calls.append(
            {"account_id": account_id, "sku": sku, "quantity": quantity, "order_id": order_id}
        )
        if sku in self.fail_cancel_skus:
            return CancellationResult(success=False, error="order already shipped")
        return CancellationResult(success=True, reversal_id=f"rev-{sku}")


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> Iterator[None]:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_dir(tmp_path):
    return tmp_path / "audit-logs"


@pytest.fixture
def audit_logger(audit_dir, clock) -> Iterator[AuditLogger]:
    audit = AuditLogger(JsonlFileLogStore(str(audit_dir)), TEST_SECRET, clock=clock)
    audit.open()
    yield audit
    audit.close()


@pytest.fixture
def make_user() -> Callable[..., B2BUserContext]:
    roles = default_role_policy().roles

    def _make(
        role: str = "BUYER",
        *,
        user_id: str = "user-1",
        account_id: str = "acct-1",
        permissions: Sequence[str] | None = None,
        custom_limits: CustomLimits | None = None,
        contract_ids: Sequence[str] = (),
    ) -> B2BUserContext:
        if permissions is None:
            definition = roles.get(role)
            permissions = definition.permissions if definition is not None else []
        return B2BUserContext(
            user_id=user_id,
            account_id=account_id,
            role=role,
            permissions=frozenset(permissions),
            custom_limits=custom_limits,
            contract_ids=tuple(contract_ids),
            ip_address="203.0.113.7",
        )

    return _make


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(
        stock={"SKU-001": (100, 2.5), "SKU-002": (50, 10.0), "SKU-003": (5, 4.0)},
    )
