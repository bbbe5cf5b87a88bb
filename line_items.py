"""
line_items.py - Independent line-item extraction strategies.

Every strategy reads the same frozen `RecognitionResult` and returns its own
list of `LineItemCandidate`s. Strategies disagree on purpose; fusion.py
reconciles them afterwards.

Strategies (name, base confidence):
    pattern            0.8   regex patterns over text lines
    blocks             0.7   OCR blocks grouped into rows by position
    advanced_patterns  0.7   two-line items, tax flags, department codes
    nlp                0.6   money expressions paired with content words
    table              0.6   provider-detected table cells
"""

from __future__ import annotations

import re
from typing import Callable, Optional

from config import Settings
from logging_config import get_logger
from models import LineItemCandidate, RecognitionResult, TextBlock
from normalize import AMOUNT_PATTERN, clean_product_name, normalize_amount

logger = get_logger(__name__)

PATTERN_CONFIDENCE = 0.8
BLOCKS_CONFIDENCE = 0.7
ADVANCED_CONFIDENCE = 0.7
NLP_CONFIDENCE = 0.6
TABLE_CONFIDENCE = 0.6

AMOUNT = rf"(?:{AMOUNT_PATTERN})"
NAME = r"(?P<name>.*?[A-Za-z].*?)"

# Lines that look like prices but are receipt furniture, not purchases.
EXCLUDED_LINE_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"^(receipt|invoice|bill|order|thank\s*you|thanks|visit|welcome)\b", re.I),
    re.compile(r"\b(sub\s*-?\s*total|total|tax|discount|balance|amount\s+due)\b", re.I),
    re.compile(r"\b(visa|mastercard|amex|debit|credit|cash|change|tender)\b", re.I),
    re.compile(r"^\(?\d{3}\)?[-\s.]\d{3}[-\s.]\d{4}"),
    re.compile(r"www\.|\.com\b|\S+@\S+\.\w+", re.I),
    re.compile(r"^\d{1,2}:\d{2}(:\d{2})?\s*(am|pm)?$", re.I),
    re.compile(r"^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}$"),
)

# Most specific first: a looser pattern would swallow the qty/unit columns
# into the item name.
ITEM_LINE_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    (
        "qty_times_unit",
        re.compile(
            rf"^{NAME}\s+(?P<qty>\d{{1,3}})\s*[x×*]\s*\$?(?P<unit>{AMOUNT})"
            rf"\s*=?\s*\$?(?P<total>{AMOUNT})$",
            re.I,
        ),
    ),
    (
        "at_unit_price",
        re.compile(
            rf"^{NAME}\s+(?:(?P<qty>\d{{1,3}})\s*)?@\s*\$?(?P<unit>{AMOUNT})"
            rf"\s*=?\s*\$?(?P<total>{AMOUNT})$",
            re.I,
        ),
    ),
    (
        "qty_name_price",
        re.compile(rf"^(?P<qty>\d{{1,2}})\s+{NAME}\s+\$?(?P<total>{AMOUNT})$"),
    ),
    (
        "name_price",
        re.compile(rf"^{NAME}\s+\$?(?P<total>{AMOUNT})$"),
    ),
)

CONTINUATION_LINE = re.compile(
    rf"^(?P<qty>\d+(?:\.\d+)?)\s*[@x×]\s*\$?(?P<unit>{AMOUNT})"
    rf"\s*=?\s*\$?(?P<total>{AMOUNT})$",
    re.I,
)
TAX_FLAG_SUFFIX = re.compile(rf"^{NAME}\s+\$?(?P<total>{AMOUNT})\s+(?P<flag>[TNF])$")
TAX_FLAG_BEFORE_PRICE = re.compile(rf"^{NAME}\s+(?P<flag>T)\s+\$?(?P<total>{AMOUNT})$")
DEPARTMENT_CODE = re.compile(rf"^(?P<code>\d{{3,}})\s+{NAME}\s+\$?(?P<total>{AMOUNT})$")
TRAILING_PRICE = re.compile(rf"^{NAME}\s*\$?(?P<total>{AMOUNT})$")
PRICE_ONLY = re.compile(rf"^\$?\s*({AMOUNT})$")
HAS_TRAILING_PRICE = re.compile(rf"\$?{AMOUNT}$")

MONEY_EXPRESSION = re.compile(
    r"\$\s?(?:\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:[.,]\d{2})?)"
    r"|\b(?:\d{1,3}(?:,\d{3})+\.\d{2}|\d+[.,]\d{2})\b"
)
STOP_WORDS = frozenset({"the", "a", "an", "and", "of", "for", "with", "at", "to", "in", "on", "per"})

ITEM_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Food": ("food", "meal", "snack", "bread", "milk", "cheese", "meat", "vegetable", "fruit",
             "egg", "banana", "apple", "chicken", "beef", "rice", "pasta"),
    "Beverage": ("drink", "coffee", "tea", "soda", "juice", "water", "beer", "wine"),
    "Personal Care": ("shampoo", "soap", "toothpaste", "deodorant", "lotion"),
    "Household": ("cleaner", "detergent", "paper", "towel", "bag", "foil"),
    "Electronics": ("phone", "computer", "laptop", "cable", "battery", "charger", "headphone", "tv"),
    "Clothing": ("shirt", "pants", "shoes", "dress", "jacket", "hat"),
    "Automotive": ("oil", "filter", "tire", "gas", "fuel"),
    "Health": ("medicine", "vitamin", "supplement", "prescription"),
}

MERCHANT_ITEM_CATEGORIES: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"restaurant|cafe|coffee|food", re.I), "Food"),
    (re.compile(r"gas|fuel|station", re.I), "Automotive"),
    (re.compile(r"pharmacy|cvs|walgreens", re.I), "Health"),
    (re.compile(r"grocery|market|store", re.I), "Food"),
)

NON_TAXABLE_KEYWORDS = ("food", "grocery", "bread", "milk", "meat", "vegetable", "fruit")
GROCERY_MERCHANT = re.compile(r"grocery|market|walmart|target|kroger|safeway", re.I)

LineItemStrategy = Callable[[RecognitionResult, Settings], list[LineItemCandidate]]


def is_excluded_line(line: str) -> bool:
    """True for header, footer, payment and summary lines."""
    stripped = line.strip()
    return not stripped or any(pattern.search(stripped) for pattern in EXCLUDED_LINE_PATTERNS)


def make_candidate(
    name: str,
    total: str | float,
    settings: Settings,
    *,
    confidence: float,
    strategy: str,
    provenance: str,
    quantity: str | float | None = None,
    unit_price: str | float | None = None,
    **extra,
) -> Optional[LineItemCandidate]:
    """Build a candidate, or None when it fails the shared validity rules."""
    cleaned = clean_product_name(name)
    total_price = normalize_amount(total)
    if not cleaned or not re.search(r"[A-Za-z]", cleaned):
        return None
    if not 0 < total_price < settings.max_item_price:
        logger.debug(
            "line_item_rejected | strategy=%s | name=%r | price=%s | reason=price_out_of_range",
            strategy,
            cleaned,
            total_price,
        )
        return None

    qty = float(quantity) if quantity not in (None, "") else None
    unit = normalize_amount(unit_price) if unit_price not in (None, "") else None
    if qty is None and unit:
        qty = round(total_price / unit, 3)
    if qty is None or qty <= 0:
        qty = 1.0
    if unit is None:
        unit = round(total_price / qty, 2)

    return LineItemCandidate(
        name=cleaned,
        quantity=qty,
        unit_price=unit,
        total_price=total_price,
        confidence=confidence,
        source_strategy=strategy,
        provenance_text=provenance.strip(),
        **extra,
    )


def extract_pattern_items(result: RecognitionResult, settings: Settings) -> list[LineItemCandidate]:
    items: list[LineItemCandidate] = []
    for line in result.lines:
        if is_excluded_line(line):
            continue
        for label, pattern in ITEM_LINE_PATTERNS:
            match = pattern.match(line)
            if not match:
                continue
            groups = match.groupdict()
            candidate = make_candidate(
                groups["name"],
                groups["total"],
                settings,
                confidence=PATTERN_CONFIDENCE,
                strategy="pattern",
                provenance=line,
                quantity=groups.get("qty"),
                unit_price=groups.get("unit"),
            )
            if candidate:
                logger.debug("line_item | strategy=pattern | form=%s | name=%r", label, candidate.name)
                items.append(candidate)
            break
    return items


def group_blocks_into_rows(blocks: tuple[TextBlock, ...]) -> list[list[TextBlock]]:
    """Group positioned blocks whose vertical centers overlap into rows.

    Blocks without geometry each form their own row, in reading order.
    """
    positioned = sorted(
        (block for block in blocks if block.bbox is not None),
        key=lambda block: (block.bbox[1], block.bbox[0]),
    )
    rows: list[list[TextBlock]] = []
    for block in positioned:
        center = block.center_y
        for row in rows:
            anchor = row[0]
            tolerance = min(anchor.bbox[3], block.bbox[3]) / 2.0
            if abs(anchor.center_y - center) <= tolerance:
                row.append(block)
                break
        else:
            rows.append([block])

    ordered = [sorted(row, key=lambda block: block.bbox[0]) for row in rows]
    ordered.extend([block] for block in blocks if block.bbox is None)
    return ordered


def extract_block_items(result: RecognitionResult, settings: Settings) -> list[LineItemCandidate]:
    items: list[LineItemCandidate] = []
    for row in group_blocks_into_rows(result.blocks):
        text = " ".join(block.text.strip() for block in row if block.text.strip())
        if is_excluded_line(text):
            continue
        match = TRAILING_PRICE.match(text)
        if not match:
            continue
        candidate = make_candidate(
            match.group("name"),
            match.group("total"),
            settings,
            confidence=BLOCKS_CONFIDENCE,
            strategy="blocks",
            provenance=text,
        )
        if candidate:
            items.append(candidate)
    return items


def extract_advanced_items(result: RecognitionResult, settings: Settings) -> list[LineItemCandidate]:
    items: list[LineItemCandidate] = []
    lines = result.lines

    for index, line in enumerate(lines):
        if is_excluded_line(line):
            continue

        # Name on one line, "2 @ 1.99 3.98" on the next.
        if index + 1 < len(lines) and not HAS_TRAILING_PRICE.search(line):
            continuation = CONTINUATION_LINE.match(lines[index + 1])
            if continuation:
                candidate = make_candidate(
                    line,
                    continuation.group("total"),
                    settings,
                    confidence=ADVANCED_CONFIDENCE,
                    strategy="advanced_patterns",
                    provenance=f"{line}\n{lines[index + 1]}",
                    quantity=continuation.group("qty"),
                    unit_price=continuation.group("unit"),
                )
                if candidate:
                    items.append(candidate)
                continue

        match = TAX_FLAG_SUFFIX.match(line) or TAX_FLAG_BEFORE_PRICE.match(line)
        if match:
            candidate = make_candidate(
                match.group("name"),
                match.group("total"),
                settings,
                confidence=ADVANCED_CONFIDENCE,
                strategy="advanced_patterns",
                provenance=line,
                taxable=match.group("flag").upper() == "T",
            )
            if candidate:
                items.append(candidate)
            continue

        match = DEPARTMENT_CODE.match(line)
        if match:
            candidate = make_candidate(
                match.group("name"),
                match.group("total"),
                settings,
                confidence=ADVANCED_CONFIDENCE,
                strategy="advanced_patterns",
                provenance=line,
                department_code=match.group("code"),
            )
            if candidate:
                items.append(candidate)
    return items


def content_words(text: str) -> list[str]:
    """Noun-like tokens of a phrase: words and percentages, no bare numbers or stop words."""
    words = []
    for token in text.split():
        stripped = token.strip(".,:;()[]{}\"'")
        if not stripped or not re.search(r"[A-Za-z%]", stripped):
            continue
        if stripped.lower() in STOP_WORDS:
            continue
        words.append(stripped)
    return words


def extract_nlp_items(result: RecognitionResult, settings: Settings) -> list[LineItemCandidate]:
    items: list[LineItemCandidate] = []
    for line in result.lines:
        if is_excluded_line(line):
            continue
        money = list(MONEY_EXPRESSION.finditer(line))
        if not money:
            continue
        phrase = content_words(line[: money[0].start()])
        if not phrase:
            continue
        candidate = make_candidate(
            " ".join(phrase),
            money[-1].group(0),
            settings,
            confidence=NLP_CONFIDENCE,
            strategy="nlp",
            provenance=line,
        )
        if candidate:
            items.append(candidate)
    return items


def extract_table_items(result: RecognitionResult, settings: Settings) -> list[LineItemCandidate]:
    items: list[LineItemCandidate] = []
    for table in result.tables:
        for row in table.rows():
            found_in_cell = False
            for cell in row:
                if is_excluded_line(cell.text):
                    continue
                match = TRAILING_PRICE.match(cell.text.strip())
                if match:
                    candidate = make_candidate(
                        match.group("name"),
                        match.group("total"),
                        settings,
                        confidence=TABLE_CONFIDENCE,
                        strategy="table",
                        provenance=cell.text,
                    )
                    if candidate:
                        items.append(candidate)
                        found_in_cell = True
            if found_in_cell:
                continue

            # Name and price in separate columns of the same row.
            row_text = " ".join(cell.text.strip() for cell in row if cell.text.strip())
            names = [c.text for c in row if re.search(r"[A-Za-z]", c.text)]
            prices = [c.text for c in row if PRICE_ONLY.match(c.text.strip())]
            if not names or not prices or is_excluded_line(row_text):
                continue
            candidate = make_candidate(
                names[0],
                PRICE_ONLY.match(prices[-1].strip()).group(1),
                settings,
                confidence=TABLE_CONFIDENCE,
                strategy="table",
                provenance=row_text,
            )
            if candidate:
                items.append(candidate)
    return items


LINE_ITEM_STRATEGIES: tuple[tuple[str, LineItemStrategy], ...] = (
    ("pattern", extract_pattern_items),
    ("blocks", extract_block_items),
    ("advanced_patterns", extract_advanced_items),
    ("nlp", extract_nlp_items),
    ("table", extract_table_items),
)


def _has_keyword(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}", text) is not None


def categorize_item(name: str, merchant_name: str | None = None) -> str:
    lowered = name.lower()
    for category, keywords in ITEM_CATEGORY_KEYWORDS.items():
        if any(_has_keyword(lowered, keyword) for keyword in keywords):
            return category
    for pattern, category in MERCHANT_ITEM_CATEGORIES:
        if merchant_name and pattern.search(merchant_name):
            return category
    return "Other"


def determine_taxability(name: str, merchant_name: str | None = None) -> bool:
    """Food staples bought at grocery stores are usually not taxed."""
    lowered = name.lower()
    is_staple = any(_has_keyword(lowered, keyword) for keyword in NON_TAXABLE_KEYWORDS)
    return not (is_staple and merchant_name and GROCERY_MERCHANT.search(merchant_name))


def enrich_items(items: list[LineItemCandidate], merchant_name: str | None) -> list[LineItemCandidate]:
    """Fill in category and taxability where no strategy determined them."""
    enriched = []
    for item in items:
        updates = {}
        if item.category is None:
            updates["category"] = categorize_item(item.name, merchant_name)
        if item.taxable is None:
            updates["taxable"] = determine_taxability(item.name, merchant_name)
        enriched.append(item.model_copy(update=updates) if updates else item)
    return enriched
