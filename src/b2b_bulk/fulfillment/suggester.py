"""Weighted-similarity substitute product suggestions."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from b2b_bulk.fulfillment.capabilities import (
    AlternativeSuggestion,
    CatalogProduct,
    ProductCatalog,
)

logger = logging.getLogger(__name__)

_NUMERIC_TOLERANCE = 0.1
_TOKEN_SPLIT = re.compile(r"[^\w]+")
_BULK_QUANTITY = 100


@dataclass(frozen=True)
class SimilarityWeights:
    category: float = 0.3
    brand: float = 0.2
    attributes: float = 0.25
    price: float = 0.1
    name: float = 0.1
    tags: float = 0.05


# Specifications matter more than brand for trade buyers.
B2B_WEIGHTS = SimilarityWeights(
    category=0.4, brand=0.15, attributes=0.3, price=0.05, name=0.05, tags=0.05
)


@dataclass(frozen=True)
class SuggesterConfig:
    max_suggestions: int = 3
    min_similarity: float = 0.3
    price_tolerance_percent: float = 20.0
    allow_cross_brand: bool = True
    weights: SimilarityWeights = B2B_WEIGHTS


def _jaccard(left: Iterable[Any], right: Iterable[Any]) -> float:
    a, b = set(left), set(right)
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def _name_tokens(name: str) -> set[str]:
    return {token for token in _TOKEN_SPLIT.split(name.lower()) if len(token) > 2}


def _values_match(left: Any, right: Any) -> bool:
    if isinstance(left, (list, tuple, set)) and isinstance(right, (list, tuple, set)):
        return bool(set(left) & set(right))
    if (
        isinstance(left, (int, float))
        and isinstance(right, (int, float))
        and not isinstance(left, bool)
        and not isinstance(right, bool)
    ):
        return abs(left - right) <= min(left, right) * _NUMERIC_TOLERANCE
    if isinstance(left, str) and isinstance(right, str):
        return left.strip().lower() == right.strip().lower()
    return left == right


def _attribute_similarity(left: Mapping[str, Any], right: Mapping[str, Any]) -> float:
    if not left and not right:
        return 1.0
    shared = [key for key in left if key in right]
    if not shared:
        return 0.0
    return sum(1 for key in shared if _values_match(left[key], right[key])) / len(shared)


def _same_brand(left: str | None, right: str | None) -> bool:
    return bool(left and right and left.strip().lower() == right.strip().lower())


class AlternativeSuggester:
    """Scores in-stock candidates against an unavailable product.

    Scoring is pure CPU work; callers fetch candidates beforehand.
    """

    def __init__(self, config: SuggesterConfig | None = None) -> None:
        self._config = config or SuggesterConfig()

    @property
    def config(self) -> SuggesterConfig:
        return self._config

    def suggest(
        self,
        target: CatalogProduct,
        candidates: Iterable[CatalogProduct],
        requested_quantity: int | None = None,
    ) -> list[AlternativeSuggestion]:
        scored: list[tuple[float, CatalogProduct]] = []
        for candidate in candidates:
            if candidate.sku == target.sku:
                continue
            if not candidate.in_stock or candidate.stock_quantity <= 0:
                continue
            if not self._config.allow_cross_brand and not _same_brand(
                target.brand, candidate.brand
            ):
                continue
            score = round(self.score(target, candidate), 2)
            if score >= self._config.min_similarity:
                scored.append((score, candidate))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            AlternativeSuggestion(
                sku=candidate.sku,
                name=candidate.name,
                similarity=score,
                available=candidate.in_stock,
                price=candidate.price,
                reason=self._reason(target, candidate, requested_quantity),
            )
            for score, candidate in scored[: self._config.max_suggestions]
        ]

    def score(self, target: CatalogProduct, candidate: CatalogProduct) -> float:
        weights = self._config.weights
        score = weights.category * _jaccard(target.categories, candidate.categories)
        if _same_brand(target.brand, candidate.brand):
            score += weights.brand
        elif self._config.allow_cross_brand:
            score += weights.brand * 0.5
        score += weights.attributes * _attribute_similarity(target.attributes, candidate.attributes)
        score += weights.price * self._price_similarity(target.price, candidate.price)
        score += weights.name * _jaccard(_name_tokens(target.name), _name_tokens(candidate.name))
        if target.tags and candidate.tags:
            score += weights.tags * _jaccard(target.tags, candidate.tags)
        return min(score, 1.0)

    def _price_similarity(self, left: float | None, right: float | None) -> float:
        if left is None or right is None:
            return 0.0
        high, low = max(left, right), min(left, right)
        if high <= 0:
            return 1.0
        diff_percent = (high - low) / high * 100
        tolerance = self._config.price_tolerance_percent
        if diff_percent <= tolerance:
            return 1 - diff_percent / tolerance
        return 0.0

    def _reason(
        self,
        target: CatalogProduct,
        candidate: CatalogProduct,
        requested_quantity: int | None,
    ) -> str:
        parts: list[str] = []
        if _jaccard(target.categories, candidate.categories) > 0.5:
            parts.append("Same category")
        if _same_brand(target.brand, candidate.brand):
            parts.append("Same brand")
        if self._price_similarity(target.price, candidate.price) > 0.8:
            parts.append("Similar price")
        elif target.price and candidate.price is not None and candidate.price < target.price:
            lower = round((target.price - candidate.price) / target.price * 100)
            parts.append(f"{lower}% lower price")
        if _attribute_similarity(target.attributes, candidate.attributes) > 0.7:
            parts.append("Matching specifications")
        reason = ", ".join(parts) if parts else "Similar product available"

        if requested_quantity and requested_quantity > _BULK_QUANTITY:
            if candidate.stock_quantity >= requested_quantity:
                reason += ". Bulk availability confirmed"
        if target.price is not None and candidate.price is not None:
            savings = (target.price - candidate.price) * (requested_quantity or 1)
            if savings > 0:
                reason += f". Potential savings: ${savings:.2f}"
        return reason


class CatalogAlternativeFinder:
    """Adapts a product catalog and a suggester to the engine's finder interface."""

    def __init__(self, catalog: ProductCatalog, suggester: AlternativeSuggester) -> None:
        self._catalog = catalog
        self._suggester = suggester

    async def find_alternatives(self, sku: str, quantity: int) -> Sequence[AlternativeSuggestion]:
        target = await self._catalog.get_product(sku)
        if target is None:
            logger.info("No catalog entry for %s; no alternatives offered", sku)
            return []
        candidates = await self._catalog.find_candidates(target)
        return self._suggester.suggest(target, candidates, requested_quantity=quantity)
