"""
normalize.py - Text normalization shared by every extraction stage.

Core normalizers:
    normalize_merchant(name)     -> canonical lowercase merchant key
    display_merchant(name)       -> human-facing merchant name
    normalize_amount(text)       -> float rounded to 2 decimals
    normalize_item_name(name)    -> comparison key for fuzzy matching
    clean_product_name(name)     -> display name for a line item

Design principles:
    - SAME normalization on BOTH sides of any comparison
    - Pure transformations, no external calls
    - Invalid input degrades to neutral defaults
"""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

from logging_config import get_logger

logger = get_logger(__name__)

MERCHANT_ALIASES: dict[str, str] = {
    "wmt": "walmart",
    "wal-mart": "walmart",
    "walmart supercenter": "walmart",
    "the home depot": "home depot",
    "homedepot": "home depot",
    "costco whse": "costco",
    "costco wholesale": "costco",
    "tgt": "target",
    "bestbuy": "best buy",
    "best buy co": "best buy",
    "sbux": "starbucks",
    "mcdonald's": "mcdonalds",
    "cvs pharmacy": "cvs",
    "walgreens pharmacy": "walgreens",
    "lowe's": "lowes",
    "trader joe's": "trader joes",
    "whole foods market": "whole foods",
    "amzn": "amazon",
}

# Canonical key -> name as it should be shown to a user.
KNOWN_MERCHANTS: dict[str, str] = {
    "walmart": "Walmart",
    "target": "Target",
    "costco": "Costco",
    "home depot": "The Home Depot",
    "lowes": "Lowe's",
    "best buy": "Best Buy",
    "starbucks": "Starbucks",
    "mcdonalds": "McDonald's",
    "cvs": "CVS Pharmacy",
    "walgreens": "Walgreens",
    "kroger": "Kroger",
    "safeway": "Safeway",
    "whole foods": "Whole Foods Market",
    "trader joes": "Trader Joe's",
    "shell": "Shell",
    "chevron": "Chevron",
    "exxon": "Exxon",
    "amazon": "Amazon",
    "apple store": "Apple Store",
    "micro center": "Micro Center",
}

STRIP_SUFFIXES: list[str] = [
    "inc",
    "llc",
    "corp",
    "ltd",
    "co",
    "company",
    "store",
    "stores",
]

NULL_TOKENS = {"n/a", "na", "none", "null", "unknown"}

NAME_SUBSTITUTIONS: list[tuple[str, str]] = [
    ("%", " percent "),
    ("&", " and "),
    ("@", " at "),
]

MAX_PRODUCT_NAME_LENGTH = 100

# Thousands-separated amounts first, so "1,299.99" is not read as "1,29" or "299.99".
AMOUNT_PATTERN = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:[.,]\d{1,2})?"


def normalize_merchant(name: str | None) -> str:
    """Normalize a merchant string to a canonical lowercase key."""
    if not name or not str(name).strip():
        return ""

    cleaned = str(name).lower().strip()
    cleaned = unicodedata.normalize("NFD", cleaned)
    cleaned = "".join(char for char in cleaned if unicodedata.category(char) != "Mn")

    for alias in sorted(MERCHANT_ALIASES, key=len, reverse=True):
        if alias in cleaned:
            cleaned = cleaned.replace(alias, MERCHANT_ALIASES[alias])
            break

    cleaned = re.sub(r"#\s*\d+", "", cleaned)
    cleaned = re.sub(r"[^\w\s]", "", cleaned, flags=re.UNICODE).replace("_", " ")

    words = cleaned.split()
    while (
        len(words) > 1
        and words[-1] in STRIP_SUFFIXES
        and " ".join(words) not in KNOWN_MERCHANTS
    ):
        words.pop()
    normalized = " ".join(words)

    logger.debug("normalize_merchant | raw=%r | normalized=%r", name, normalized)
    return normalized


def find_known_merchant(text: str | None) -> str | None:
    """Return the canonical key of a known merchant mentioned in `text`."""
    key = normalize_merchant(text)
    if not key:
        return None
    if key in KNOWN_MERCHANTS:
        return key
    padded = f" {key} "
    for known in sorted(KNOWN_MERCHANTS, key=len, reverse=True):
        if f" {known} " in padded:
            return known
    return None


def display_merchant(name: str | None) -> str:
    """Human-facing merchant name: known merchants get their canonical spelling."""
    if not name:
        return ""
    known = find_known_merchant(name)
    if known:
        return KNOWN_MERCHANTS[known]
    return re.sub(r"\s+", " ", str(name)).strip()


def normalize_amount(amount_str: Any) -> float:
    """Normalize amount input into a non-negative 2-decimal float."""
    if amount_str is None:
        return 0.0

    if isinstance(amount_str, (int, float)) and not isinstance(amount_str, bool):
        value = float(amount_str)
        if not math.isfinite(value) or value < 0:
            logger.warning("normalize_amount | invalid=%r | fallback=0.0", amount_str)
            return 0.0
        return round(value, 2)

    cleaned = str(amount_str).strip()
    if not cleaned or cleaned.lower() in NULL_TOKENS:
        return 0.0

    is_negative = (
        cleaned.startswith("-")
        or (cleaned.startswith("(") and cleaned.endswith(")"))
        or "-$" in cleaned
    )

    cleaned = re.sub(r"[$€£¥()\s]", "", cleaned)
    # OCR frequently reads a decimal comma ("3,99"); a trailing 2-digit
    # group after a comma is treated as cents.
    if re.fullmatch(r"\d+,\d{2}", cleaned):
        cleaned = cleaned.replace(",", ".")
    cleaned = cleaned.replace(",", "")

    try:
        value = float(cleaned)
    except ValueError:
        logger.debug("normalize_amount | parse_failed | raw=%r | fallback=0.0", amount_str)
        return 0.0

    if not math.isfinite(value) or is_negative or value < 0:
        logger.debug("normalize_amount | rejected=%r | fallback=0.0", amount_str)
        return 0.0

    return round(value, 2)


def normalize_item_name(name: str | None) -> str:
    """Comparison key for line-item and product names.

    "Milk 2%" and "milk 2 percent" both become "milk 2 percent".
    """
    if not name:
        return ""
    key = str(name).lower()
    for symbol, word in NAME_SUBSTITUTIONS:
        key = key.replace(symbol, word)
    key = re.sub(r"[^\w\s]", " ", key, flags=re.UNICODE).replace("_", " ")
    return re.sub(r"\s+", " ", key).strip()


def clean_product_name(name: str | None) -> str:
    """Strip leading quantity/code digits and stray symbols from an item name."""
    if not name:
        return ""
    cleaned = re.sub(r"^[\d\s]+", "", str(name))
    cleaned = re.sub(r"[\s$*:]+$", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned[:MAX_PRODUCT_NAME_LENGTH].strip()
