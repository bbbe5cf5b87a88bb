"""
test_fusion.py - Candidate fusion tests.

Covers:
- equivalent items from different strategies collapse to one
- higher confidence wins and absorbs missing fields
- pluggable similarity
- warranty matching by name or by type and period

Usage: python test_fusion.py
"""

from __future__ import annotations

import os
import sys
from itertools import combinations

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from fusion import (
    fuse_items,
    fuse_warranties,
    item_matcher,
    name_similarity,
    prices_match,
)
from models import LineItemCandidate, WarrantyCandidate, WarrantyPeriod


def _item(name: str, price: float, confidence: float, source: str = "pattern", **extra) -> LineItemCandidate:
    return LineItemCandidate(
        name=name,
        total_price=price,
        confidence=confidence,
        source_strategy=source,
        **extra,
    )


def _warranty(confidence: float = 0.7, **fields) -> WarrantyCandidate:
    return WarrantyCandidate(confidence=confidence, source_strategy=fields.pop("source", "keyword"), **fields)


def test_same_item_from_two_strategies_keeps_the_more_confident():
    pattern = _item("Milk 2%", 3.99, 0.8)
    nlp = _item("milk 2 percent", 3.99, 0.6, source="nlp")

    fused = fuse_items([pattern, nlp])

    assert fused == [pattern]


def test_later_higher_confidence_candidate_replaces_earlier():
    low = _item("Eggs", 2.49, 0.6, source="nlp")
    high = _item("EGGS", 2.49, 0.9, source="table")

    fused = fuse_items([low, high])

    assert len(fused) == 1
    assert fused[0].name == "EGGS"
    assert fused[0].source_strategy == "table"


def test_winner_absorbs_fields_it_is_missing():
    winner = _item("Paper Towels", 8.99, 0.8)
    loser = _item("PAPER TOWELS", 8.99, 0.6, source="advanced_patterns", taxable=True, department_code="0042")

    (fused,) = fuse_items([winner, loser])

    assert fused.name == "Paper Towels"
    assert fused.confidence == 0.8
    assert fused.taxable is True
    assert fused.department_code == "0042"


def test_price_mismatch_keeps_both():
    fused = fuse_items([_item("Milk", 3.99, 0.8), _item("Milk", 5.99, 0.6)])
    assert [item.total_price for item in fused] == [3.99, 5.99]


def test_fusion_is_idempotent_and_leaves_no_matching_pair():
    candidates = [
        _item("Milk 2%", 3.99, 0.8),
        _item("Bread", 2.49, 0.8),
        _item("milk 2 percent", 3.99, 0.6, source="nlp"),
        _item("Bread", 2.50, 0.6, source="nlp"),
        _item("Coffee Beans", 12.99, 0.6, source="nlp"),
    ]

    once = fuse_items(candidates)
    twice = fuse_items(once)

    assert once == twice
    assert [item.name for item in once] == ["Milk 2%", "Bread", "Coffee Beans"]
    matches = item_matcher(name_similarity, 80.0, 0.05)
    assert not any(matches(a, b) for a, b in combinations(once, 2))


def test_custom_similarity_function():
    items = [_item("Apples", 1.00, 0.8), _item("Pears", 1.00, 0.7)]

    assert len(fuse_items(items, similarity_fn=lambda a, b: 100.0)) == 1
    assert len(fuse_items(items, similarity_fn=lambda a, b: 0.0)) == 2


def test_prices_match_tolerance():
    assert prices_match(10.00, 10.40, 0.05)
    assert not prices_match(10.00, 11.00, 0.05)
    assert prices_match(0.0, 0.0, 0.05)


def test_name_similarity_uses_normalized_names():
    assert name_similarity("Milk 2%", "MILK 2 percent") == 100.0
    assert name_similarity("", "Milk") == 0.0


def test_unnamed_warranties_merge_on_type_and_period():
    one_year = WarrantyPeriod(years=1)
    first = _warranty(0.6, warranty_type="manufacturer", warranty_period=one_year, serial_number="SN1")
    second = _warranty(0.7, warranty_type="manufacturer", warranty_period=WarrantyPeriod(years=1), source="merchant_category")

    (fused,) = fuse_warranties([first, second])

    assert fused.source_strategy == "merchant_category"
    assert fused.serial_number == "SN1"


def test_policy_warranties_without_period_merge():
    fused = fuse_warranties(
        [
            _warranty(0.6, warranty_type="return_policy"),
            _warranty(0.5, warranty_type="return_policy", notes="Receipt required"),
        ]
    )
    assert len(fused) == 1
    assert fused[0].notes == "Receipt required"


def test_distinct_warranties_stay_separate():
    fused = fuse_warranties(
        [
            _warranty(warranty_type="manufacturer", warranty_period=WarrantyPeriod(years=1)),
            _warranty(warranty_type="extended", warranty_period=WarrantyPeriod(years=1)),
            _warranty(warranty_type="manufacturer", warranty_period=WarrantyPeriod(years=2)),
        ]
    )
    assert len(fused) == 3


def test_named_warranties_merge_on_similar_item_names():
    fused = fuse_warranties(
        [
            _warranty(0.9, item_name="Samsung TV", warranty_type="extended", warranty_period=WarrantyPeriod(years=2)),
            _warranty(0.6, item_name="SAMSUNG TV", warranty_type="manufacturer", warranty_period=WarrantyPeriod(years=1)),
        ]
    )
    assert len(fused) == 1
    assert fused[0].warranty_type == "extended"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-q"]))
