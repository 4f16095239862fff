"""Narrow interfaces to the commerce backend.

The engine and rollback logic only ever talk to these protocols, so tests
and alternative backends can supply their own implementations.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ProductAvailability:
    sku: str
    available: bool
    quantity: int
    price: float | None = None
    name: str | None = None


@dataclass(frozen=True)
class AlternativeSuggestion:
    sku: str
    name: str
    similarity: float
    available: bool
    price: float | None
    reason: str


@dataclass(frozen=True)
class CartLine:
    sku: str
    quantity: int
    price: float | None = None


@dataclass(frozen=True)
class CancellationResult:
    success: bool
    reversal_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CatalogProduct:
    sku: str
    name: str
    categories: tuple[str, ...] = ()
    brand: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    price: float | None = None
    tags: tuple[str, ...] = ()
    in_stock: bool = True
    stock_quantity: int = 0


class AvailabilityChecker(Protocol):
    async def check_availability(self, sku: str) -> ProductAvailability: ...


class AlternativeFinder(Protocol):
    async def find_alternatives(
        self, sku: str, quantity: int
    ) -> Sequence[AlternativeSuggestion]: ...


class CartMutator(Protocol):
    async def add_to_cart(self, lines: Sequence[CartLine]) -> Mapping[str, str] | None:
        """Add lines in one call; may return a SKU -> order/line id mapping."""
        ...


class OrderCanceller(Protocol):
    async def cancel_item(
        self,
        *,
        account_id: str,
        sku: str,
        quantity: int,
        order_id: str | None,
    ) -> CancellationResult: ...


class ProductCatalog(Protocol):
    async def get_product(self, sku: str) -> CatalogProduct | None: ...

    async def find_candidates(self, product: CatalogProduct) -> Sequence[CatalogProduct]: ...
