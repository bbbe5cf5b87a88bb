"""
test_fields.py - Merchant, total, date and category strategy tests.

Usage: python test_fields.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from fields import (
    UNKNOWN_MERCHANT,
    categorize_receipt,
    date_candidates,
    is_generic_merchant,
    merchant_candidates,
    pick_best,
    total_candidates,
)
from models import CandidateField, LineItemCandidate, ProviderName, RecognitionResult

TODAY = date(2024, 6, 1)


def _result(text: str) -> RecognitionResult:
    return RecognitionResult(text=text, confidence=0.9, provider=ProviderName.LOCAL)


def test_known_merchant_beats_header_scan():
    candidates = merchant_candidates(_result("WALMART SUPERCENTER\nStore #1234\nMilk 3.99"))

    assert [c.source_strategy for c in candidates] == ["known_merchant", "header_scan"]
    best = pick_best(candidates)
    assert best.value == "Walmart"
    assert best.confidence == 0.85


def test_header_scan_skips_addresses_and_phones():
    candidates = merchant_candidates(_result("123 Main St\n(555) 123-4567\nJoe's Diner\nBurger 9.99"))

    assert len(candidates) == 1
    assert candidates[0].value == "Joe's Diner"
    assert candidates[0].source_strategy == "header_scan"


def test_first_line_is_a_low_confidence_last_resort():
    candidates = merchant_candidates(_result("RECEIPT\n(555) 123-4567"))

    assert len(candidates) == 1
    assert candidates[0].value == "RECEIPT"
    assert candidates[0].confidence == 0.3


def test_total_prefers_keyword_scanned_from_the_bottom():
    text = "Subtotal 20.00\nTax 1.60\nTotal 21.60\nCash $30.00\nChange $8.40"
    candidates = total_candidates(_result(text))

    by_source = {c.source_strategy: c.value for c in candidates}
    assert by_source == {"keyword_total": 21.60, "currency_suffix": 8.40}
    assert pick_best(candidates).value == 21.60


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Amount Due: 15.50", 15.50),
        ("Balance Due $7.25", 7.25),
        ("TOTAL: $1,234.56", 1234.56),
        ("SUB TOTAL 20.00", None),
        ("Subtotal 20.00", None),
    ],
)
def test_total_keyword_variants(text, expected):
    keyword = [c for c in total_candidates(_result(text)) if c.source_strategy == "keyword_total"]
    if expected is None:
        assert keyword == []
    else:
        assert keyword[0].value == expected


def test_dates_parse_iso_and_us_formats():
    candidates = date_candidates(_result("Date: 03/15/24\n2024-02-01 14:22"), TODAY)

    assert [(c.value, c.confidence) for c in candidates] == [
        (date(2024, 3, 15), 0.7),
        (date(2024, 2, 1), 0.8),
    ]
    assert pick_best(candidates).value == date(2024, 2, 1)


def test_dates_reject_future_invalid_and_duplicates():
    text = "12/31/2099\n13/45/2024\n2024-03-15\n03/15/2024"
    candidates = date_candidates(_result(text), TODAY)

    assert [c.value for c in candidates] == [date(2024, 3, 15)]
    assert candidates[0].confidence == 0.8


def test_pick_best_keeps_first_on_ties():
    first = CandidateField[str](value="A", confidence=0.7, source_strategy="one")
    second = CandidateField[str](value="B", confidence=0.7, source_strategy="two")

    assert pick_best([first, second]) is first
    assert pick_best([]) is None


@pytest.mark.parametrize(
    "merchant, expected",
    [
        ("Starbucks", "Food & Dining"),
        ("Shell", "Transportation"),
        ("Best Buy", "Shopping"),
        ("CVS Pharmacy", "Healthcare"),
        ("Acme Widgets", "Other"),
    ],
)
def test_receipt_category_from_merchant(merchant, expected):
    assert categorize_receipt(merchant, []) == expected


def test_receipt_category_from_items_when_merchant_is_unknown():
    burger = LineItemCandidate(name="Cheese Burger", total_price=8.5, confidence=0.8, source_strategy="pattern")
    assert categorize_receipt(UNKNOWN_MERCHANT, [burger]) == "Food & Dining"


def test_generic_merchant_names():
    assert is_generic_merchant(UNKNOWN_MERCHANT)
    assert is_generic_merchant("")
    assert is_generic_merchant(None)
    assert not is_generic_merchant("Target")


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-q"]))
