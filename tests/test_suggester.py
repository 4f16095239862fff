from __future__ import annotations

import pytest

from b2b_bulk.fulfillment.capabilities import CatalogProduct
from b2b_bulk.fulfillment.suggester import (
    AlternativeSuggester,
    CatalogAlternativeFinder,
    SuggesterConfig,
)

TARGET = CatalogProduct(
    sku="DRILL-1",
    name="Cordless Drill 18V",
    categories=("tools", "drills"),
    brand="Acme",
    attributes={"voltage": 18, "chuck": "13mm"},
    price=100.0,
    tags=("cordless",),
    in_stock=False,
    stock_quantity=0,
)

SAME_BRAND = CatalogProduct(
    sku="DRILL-2",
    name="Cordless Drill 18V Pro",
    categories=("tools", "drills"),
    brand="ACME",
    attributes={"voltage": 18, "chuck": "13MM"},
    price=95.0,
    tags=("cordless",),
    stock_quantity=500,
)

OTHER_BRAND = CatalogProduct(
    sku="BOLT-7",
    name="Bolt Drill Driver",
    categories=("tools", "drills"),
    brand="Bolt",
    attributes={"voltage": 20, "chuck": "10mm"},
    price=80.0,
    stock_quantity=40,
)

UNRELATED = CatalogProduct(
    sku="HOSE-1",
    name="Garden Hose",
    categories=("garden",),
    brand="Zed",
    attributes={"length": 10},
    price=500.0,
    stock_quantity=10,
)

SOLD_OUT = CatalogProduct(
    sku="DRILL-3",
    name="Cordless Drill 18V",
    categories=("tools", "drills"),
    brand="Acme",
    attributes={"voltage": 18, "chuck": "13mm"},
    price=100.0,
    in_stock=True,
    stock_quantity=0,
)

CANDIDATES = [UNRELATED, OTHER_BRAND, SOLD_OUT, TARGET, SAME_BRAND]


class _Catalog:
    def __init__(self, products: list[CatalogProduct]) -> None:
        self.products = {p.sku: p for p in products}

    async def get_product(self, sku: str) -> CatalogProduct | None:
        return self.products.get(sku)

    async def find_candidates(self, product: CatalogProduct) -> list[CatalogProduct]:
        return [p for p in self.products.values() if p.sku != product.sku]


def test_suggestions_are_ranked_filtered_and_capped():
    suggester = AlternativeSuggester()

    suggestions = suggester.suggest(TARGET, CANDIDATES, requested_quantity=10)

    assert [s.sku for s in suggestions] == ["DRILL-2", "BOLT-7"]
    scores = [s.similarity for s in suggestions]
    assert scores == sorted(scores, reverse=True)
    assert all(0.3 <= score <= 1.0 for score in scores)
    assert all(s.available for s in suggestions)


def test_max_suggestions_and_min_similarity():
    capped = AlternativeSuggester(SuggesterConfig(max_suggestions=1)).suggest(TARGET, CANDIDATES)
    strict = AlternativeSuggester(SuggesterConfig(min_similarity=0.9)).suggest(TARGET, CANDIDATES)

    assert [s.sku for s in capped] == ["DRILL-2"]
    assert [s.sku for s in strict] == ["DRILL-2"]


def test_cross_brand_candidates_can_be_excluded():
    suggester = AlternativeSuggester(SuggesterConfig(allow_cross_brand=False))

    assert [s.sku for s in suggester.suggest(TARGET, CANDIDATES)] == ["DRILL-2"]


def test_cross_brand_penalty_lowers_score():
    permissive = AlternativeSuggester()
    strict = AlternativeSuggester(SuggesterConfig(allow_cross_brand=False))

    assert permissive.score(TARGET, OTHER_BRAND) > strict.score(TARGET, OTHER_BRAND)


def test_reason_explains_match_bulk_stock_and_savings():
    [best, _] = AlternativeSuggester().suggest(TARGET, CANDIDATES, requested_quantity=200)

    assert best.reason == (
        "Same category, Same brand, 5% lower price, Matching specifications"
        ". Bulk availability confirmed. Potential savings: $1000.00"
    )


def test_reason_falls_back_to_generic_text():
    plain_target = CatalogProduct(
        sku="A", name="Widget", categories=("parts",), attributes={"size": "L"}
    )
    plain = CatalogProduct(
        sku="B",
        name="Widget",
        categories=("other",),
        attributes={"size": "S"},
        stock_quantity=1,
    )
    suggester = AlternativeSuggester(SuggesterConfig(min_similarity=0.0))

    [suggestion] = suggester.suggest(plain_target, [plain])

    assert suggestion.reason == "Similar product available"


def test_numeric_attributes_match_within_tolerance():
    suggester = AlternativeSuggester()
    near = CatalogProduct(sku="N", name="n", attributes={"voltage": 19})
    far = CatalogProduct(sku="F", name="f", attributes={"voltage": 24})
    target = CatalogProduct(sku="T", name="t", attributes={"voltage": 18})

    assert suggester.score(target, near) > suggester.score(target, far)


@pytest.mark.asyncio
async def test_catalog_finder_uses_catalog_candidates():
    finder = CatalogAlternativeFinder(
        _Catalog([TARGET, SAME_BRAND, UNRELATED]), AlternativeSuggester()
    )

    found = await finder.find_alternatives("DRILL-1", 5)
    missing = await finder.find_alternatives("NOPE", 5)

    assert [s.sku for s in found] == ["DRILL-2"]
    assert missing == []
