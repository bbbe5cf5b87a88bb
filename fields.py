"""
fields.py - Receipt-level field strategies: merchant, total, date, category.

Each `*_candidates` function scans the recognized lines and returns every
`CandidateField` it can justify. `pick_best` resolves them: highest
confidence wins, ties keep scan order.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Iterable, Optional, TypeVar

from logging_config import get_logger
from models import CandidateField, LineItemCandidate, RecognitionResult
from normalize import (
    AMOUNT_PATTERN,
    KNOWN_MERCHANTS,
    display_merchant,
    find_known_merchant,
    normalize_amount,
)

logger = get_logger(__name__)

T = TypeVar("T")

UNKNOWN_MERCHANT = "Unknown Merchant"
GENERIC_MERCHANT_NAMES = frozenset({"unknown merchant", "unknown", "merchant", "store", "receipt"})

KNOWN_MERCHANT_CONFIDENCE = 0.85
HEADER_SCAN_CONFIDENCE = 0.7
FIRST_LINE_CONFIDENCE = 0.3

KEYWORD_TOTAL_CONFIDENCE = 0.8
CURRENCY_SUFFIX_CONFIDENCE = 0.5

ISO_DATE_CONFIDENCE = 0.8
US_DATE_CONFIDENCE = 0.7

MERCHANT_SCAN_LINES = 5
KNOWN_MERCHANT_SCAN_LINES = 10

PHONE_LINE = re.compile(r"^\(?\d{3}\)?[-\s.]\d{3}[-\s.]\d{4}")
ADDRESS_LINE = re.compile(r"\d+\s+[NSEW]?\s*\w+\s+(st|street|ave|avenue|rd|road|blvd|dr|drive|ln|way)\b", re.I)
HEADER_LINE = re.compile(r"^(receipt|invoice|bill|order)\b", re.I)

MONEY = rf"({AMOUNT_PATTERN})"

TOTAL_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(rf"(?<!sub)(?<!sub )(?<!sub-)total[:\s]*\$?\s*{MONEY}", re.I),
    re.compile(rf"amount(?:\s+due)?[:\s]*\$?\s*{MONEY}", re.I),
    re.compile(rf"balance(?:\s+due)?[:\s]*\$?\s*{MONEY}", re.I),
)
CURRENCY_SUFFIX = re.compile(rf"\$\s?{MONEY}$")

US_DATE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})\b")
ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")

RECEIPT_CATEGORIES: tuple[tuple[str, re.Pattern], ...] = (
    ("Food & Dining", re.compile(r"restaurant|cafe|coffee|pizza|burger|food|deli|bistro|starbucks|mcdonalds", re.I)),
    ("Transportation", re.compile(r"\b(gas|fuel|shell|chevron|exxon|bp|mobil)\b", re.I)),
    ("Shopping", re.compile(r"grocery|market|store|walmart|target|costco|best buy|home depot", re.I)),
    ("Healthcare", re.compile(r"pharmacy|cvs|walgreens|hospital|clinic|medical", re.I)),
)
FOOD_ITEM_WORDS = re.compile(r"\b(burger|pizza|coffee|sandwich|meal|drink|latte|fries|salad)\b", re.I)


def pick_best(candidates: Iterable[CandidateField[T]]) -> Optional[CandidateField[T]]:
    best: Optional[CandidateField[T]] = None
    for candidate in candidates:
        if best is None or candidate.confidence > best.confidence:
            best = candidate
    return best


def is_likely_merchant_name(line: str) -> bool:
    stripped = line.strip()
    if not 3 <= len(stripped) <= 50 or not re.search(r"[A-Za-z]", stripped):
        return False
    return not (
        PHONE_LINE.search(stripped) or ADDRESS_LINE.search(stripped) or HEADER_LINE.search(stripped)
    )


def merchant_candidates(result: RecognitionResult) -> list[CandidateField[str]]:
    lines = result.lines
    candidates: list[CandidateField[str]] = []

    for line in lines[:KNOWN_MERCHANT_SCAN_LINES]:
        known = find_known_merchant(line)
        if known:
            candidates.append(
                CandidateField[str](
                    value=KNOWN_MERCHANTS[known],
                    confidence=KNOWN_MERCHANT_CONFIDENCE,
                    source_strategy="known_merchant",
                    provenance_text=line,
                )
            )
            break

    for line in lines[:MERCHANT_SCAN_LINES]:
        if is_likely_merchant_name(line):
            candidates.append(
                CandidateField[str](
                    value=display_merchant(line),
                    confidence=HEADER_SCAN_CONFIDENCE,
                    source_strategy="header_scan",
                    provenance_text=line,
                )
            )
            break

    if not candidates and lines:
        candidates.append(
            CandidateField[str](
                value=lines[0][:50],
                confidence=FIRST_LINE_CONFIDENCE,
                source_strategy="first_line",
                provenance_text=lines[0],
            )
        )
    return candidates


def total_candidates(result: RecognitionResult) -> list[CandidateField[float]]:
    """Scan from the bottom: the final total is printed below subtotals."""
    keyword: Optional[CandidateField[float]] = None
    suffix: Optional[CandidateField[float]] = None

    for line in reversed(result.lines):
        if keyword is None:
            for pattern in TOTAL_PATTERNS:
                match = pattern.search(line)
                if match and normalize_amount(match.group(1)) > 0:
                    keyword = CandidateField[float](
                        value=normalize_amount(match.group(1)),
                        confidence=KEYWORD_TOTAL_CONFIDENCE,
                        source_strategy="keyword_total",
                        provenance_text=line,
                    )
                    break
        if suffix is None:
            match = CURRENCY_SUFFIX.search(line)
            if match and normalize_amount(match.group(1)) > 0:
                suffix = CandidateField[float](
                    value=normalize_amount(match.group(1)),
                    confidence=CURRENCY_SUFFIX_CONFIDENCE,
                    source_strategy="currency_suffix",
                    provenance_text=line,
                )
        if keyword and suffix:
            break

    return [candidate for candidate in (keyword, suffix) if candidate is not None]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def date_candidates(result: RecognitionResult, today: date) -> list[CandidateField[date]]:
    """Dates printed on the receipt, excluding impossible and future ones."""
    candidates: list[CandidateField[date]] = []
    seen: set[date] = set()

    for line in result.lines:
        found: list[tuple[Optional[date], float]] = []
        for match in ISO_DATE.finditer(line):
            year, month, day = (int(group) for group in match.groups())
            found.append((_safe_date(year, month, day), ISO_DATE_CONFIDENCE))
        for match in US_DATE.finditer(line):
            month, day, year = (int(group) for group in match.groups())
            if year < 100:
                year += 2000
            found.append((_safe_date(year, month, day), US_DATE_CONFIDENCE))

        for parsed, confidence in found:
            if parsed is None or parsed > today or parsed in seen:
                continue
            seen.add(parsed)
            candidates.append(
                CandidateField[date](
                    value=parsed,
                    confidence=confidence,
                    source_strategy="date_pattern",
                    provenance_text=line,
                )
            )
    return candidates


def is_generic_merchant(name: Optional[str]) -> bool:
    if not name:
        return True
    return name.strip().lower() in GENERIC_MERCHANT_NAMES


def categorize_receipt(merchant_name: str, items: list[LineItemCandidate]) -> str:
    for category, pattern in RECEIPT_CATEGORIES:
        if pattern.search(merchant_name or ""):
            return category
    if any(FOOD_ITEM_WORDS.search(item.name) for item in items):
        return "Food & Dining"
    return "Other"
