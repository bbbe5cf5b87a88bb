"""
warranty.py - Warranty detection strategies and post-processing.

Strategies (name, base confidence):
    text_pattern     0.7   explicit warranty / return / exchange wording
    item_category    0.6   category defaults per line item (0.8 when the
                           item name itself carries warranty text)
    merchant         0.4-0.8  retailer policies and high-value hints
    nlp_phrase       0.6   warranty sentences with a number + time unit
    serial_number    0.5   serial/model codes imply manufacturer coverage
    product_lookup   0.9   known products from a ProductLookup collaborator

After fusion, candidates are validated against sanity bounds, their
confidence is calibrated and expiration dates are computed from the
purchase date.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Callable, Optional, Protocol

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict

from config import Settings
from logging_config import get_logger
from models import LineItemCandidate, WarrantyCandidate, WarrantyPeriod
from normalize import find_known_merchant, normalize_item_name

logger = get_logger(__name__)

TEXT_PATTERN_CONFIDENCE = 0.7
CATEGORY_DEFAULT_CONFIDENCE = 0.6
ITEM_NAME_CONFIDENCE = 0.8
ELECTRONICS_STORE_CONFIDENCE = 0.5
HIGH_VALUE_CONFIDENCE = 0.4
NLP_PHRASE_CONFIDENCE = 0.6
SERIAL_NUMBER_CONFIDENCE = 0.5
PRODUCT_LOOKUP_CONFIDENCE = 0.9

CONTEXT_WINDOW = 50
KNOWN_WARRANTY_TYPES = frozenset({"manufacturer", "extended", "limited"})

WARRANTY_TEXT_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"warranty[:\s]*(\d+)\s*(year|month|day)s?", re.I),
    re.compile(r"guaranteed[:\s]*for[:\s]*(\d+)\s*(year|month|day)s?", re.I),
    re.compile(r"(\d+)[:\s-]*(year|month|day)s?\s*warranty", re.I),
    re.compile(r"extended[:\s]*warranty[:\s]*available", re.I),
    re.compile(r"protection[:\s]*plan[:\s]*(\d+)\s*(year|month)s?", re.I),
    re.compile(r"return[:\s]*within[:\s]*(\d+)\s*(day|week|month)s?", re.I),
    re.compile(r"exchange[:\s]*period[:\s]*(\d+)\s*(day|week|month)s?", re.I),
    re.compile(r"manufacturer[:\s]*warranty", re.I),
    re.compile(r"limited[:\s]*warranty", re.I),
)

# Checked in order; the first keyword found in the context decides the type.
WARRANTY_TYPE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("manufacturer", "manufacturer"),
    ("extended", "extended"),
    ("limited", "limited"),
    ("return", "return_policy"),
    ("exchange", "exchange_policy"),
    ("protection", "protection_plan"),
)

ITEM_NAME_WARRANTY_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"(\d+)\s*yr\s*warranty", re.I),
    re.compile(r"(\d+)\s*year\s*warranty", re.I),
    re.compile(r"warranty\s*(\d+)\s*yr", re.I),
    re.compile(r"extended\s*warranty", re.I),
)

PRODUCT_CATEGORIES: tuple[tuple[str, re.Pattern, Optional[re.Pattern]], ...] = (
    ("electronics", re.compile(r"phone|tablet|computer|laptop|\btv\b|camera|headphone|speaker", re.I), None),
    ("appliances", re.compile(r"refrigerator|washer|dryer|dishwasher|microwave|oven", re.I), None),
    ("automotive", re.compile(r"tire|battery|\boil\b|\bpart|filter", re.I), re.compile(r"auto|car\b|mechanic", re.I)),
    ("tools", re.compile(r"tool|drill|\bsaw\b|hammer|wrench", re.I), None),
    ("clothing", re.compile(r"shirt|pants|dress|shoe|boot|jacket", re.I), re.compile(r"clothing|apparel", re.I)),
)

CATEGORY_DEFAULTS: dict[str, tuple[WarrantyPeriod, str, str]] = {
    "electronics": (WarrantyPeriod(years=1), "manufacturer", "defects in materials and workmanship"),
    "appliances": (WarrantyPeriod(years=1), "manufacturer", "parts and labor for defects"),
    "automotive": (WarrantyPeriod(months=6), "parts", "defects and premature failure"),
    "tools": (WarrantyPeriod(years=1), "manufacturer", "defects in materials and workmanship"),
    "clothing": (WarrantyPeriod(days=30), "return_policy", "defects and sizing issues"),
}

ELECTRONICS_STORE_KEYWORDS = (
    "best buy",
    "circuit city",
    "radio shack",
    "fry",
    "micro center",
    "apple store",
    "microsoft store",
    "electronics",
    "computer",
)

# Retailer key (normalized) -> (type, period, notes, confidence)
MERCHANT_POLICIES: dict[str, tuple[str, Optional[WarrantyPeriod], str, float]] = {
    "best buy": ("geek_squad", None, "Geek Squad protection plans available", 0.7),
    "home depot": ("return_policy", WarrantyPeriod(days=90), "90-day return policy on most items", 0.8),
    "costco": ("satisfaction_guarantee", None, "Satisfaction guarantee and extended return periods", 0.8),
}

WARRANTY_SENTENCE = re.compile(r"warrant|guarantee|return|exchange|protection|coverage", re.I)
NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "twelve": 12,
    "fourteen": 14, "thirty": 30, "sixty": 60, "ninety": 90,
}
DURATION_PHRASE = re.compile(
    r"\b(\d+|" + "|".join(NUMBER_WORDS) + r")\s*-?\s*(year|month|week|day)s?\b",
    re.I,
)

SERIAL_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"serial(?:\s*(?:no|number|#))?[:.\s#]*((?=[A-Z]*\d)[A-Z0-9]{8,})", re.I),
    re.compile(r"s/n[:\s]*((?=[A-Z]*\d)[A-Z0-9]{8,})", re.I),
    re.compile(r"model(?:\s*(?:no|number|#))?[:.\s#]*((?=[A-Z]*\d)[A-Z0-9]{6,})", re.I),
)


class ProductInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    manufacturer: str
    warranty_period: WarrantyPeriod
    warranty_type: str
    coverage: str


class ProductLookup(Protocol):
    def lookup(self, product_name: str) -> Optional[ProductInfo]: ...


class StaticProductCatalog:
    """In-memory product catalog: exact key match first, then substring."""

    def __init__(self, products: Optional[dict[str, ProductInfo]] = None):
        self._products = {
            normalize_item_name(key): info for key, info in (products or DEFAULT_PRODUCTS).items()
        }

    def lookup(self, product_name: str) -> Optional[ProductInfo]:
        key = normalize_item_name(product_name)
        if not key:
            return None
        if key in self._products:
            return self._products[key]
        for known in sorted(self._products, key=len, reverse=True):
            if known in key:
                return self._products[known]
        return None


DEFAULT_PRODUCTS: dict[str, ProductInfo] = {
    "iphone": ProductInfo(
        model="iPhone",
        manufacturer="Apple",
        warranty_period=WarrantyPeriod(years=1),
        warranty_type="limited",
        coverage="manufacturing defects",
    ),
    "ipad": ProductInfo(
        model="iPad",
        manufacturer="Apple",
        warranty_period=WarrantyPeriod(years=1),
        warranty_type="limited",
        coverage="manufacturing defects",
    ),
    "macbook": ProductInfo(
        model="MacBook",
        manufacturer="Apple",
        warranty_period=WarrantyPeriod(years=1),
        warranty_type="limited",
        coverage="manufacturing defects",
    ),
    "samsung": ProductInfo(
        model="Samsung Device",
        manufacturer="Samsung",
        warranty_period=WarrantyPeriod(years=1),
        warranty_type="manufacturer",
        coverage="parts and labor",
    ),
    "dyson": ProductInfo(
        model="Dyson Appliance",
        manufacturer="Dyson",
        warranty_period=WarrantyPeriod(years=2),
        warranty_type="manufacturer",
        coverage="parts and labor",
    ),
}


class WarrantyContext:
    """Everything the warranty strategies read, shared across worker threads."""

    def __init__(
        self,
        text: str,
        items: list[LineItemCandidate],
        merchant_name: str,
        total_amount: float,
        settings: Settings,
        product_lookup: Optional[ProductLookup] = None,
    ):
        self.text = text
        self.items = items
        self.merchant_name = merchant_name
        self.total_amount = total_amount
        self.settings = settings
        self.product_lookup = product_lookup


WarrantyStrategy = Callable[[WarrantyContext], list[WarrantyCandidate]]


def period_from(amount: int, unit: str) -> WarrantyPeriod:
    unit = unit.lower().rstrip("s")
    if unit == "year":
        return WarrantyPeriod(years=amount)
    if unit == "month":
        return WarrantyPeriod(months=amount)
    if unit == "week":
        return WarrantyPeriod(days=amount * 7)
    return WarrantyPeriod(days=amount)


def determine_warranty_type(context: str) -> str:
    lowered = context.lower()
    for keyword, warranty_type in WARRANTY_TYPE_KEYWORDS:
        if keyword in lowered:
            return warranty_type
    return "general"


def detect_from_text(context: WarrantyContext) -> list[WarrantyCandidate]:
    text = context.text
    warranties = []
    for pattern in WARRANTY_TEXT_PATTERNS:
        for match in pattern.finditer(text):
            period = None
            if pattern.groups >= 2 and match.group(1) and match.group(2):
                period = period_from(int(match.group(1)), match.group(2))
            window = text[max(0, match.start() - CONTEXT_WINDOW) : match.end() + CONTEXT_WINDOW]
            warranties.append(
                WarrantyCandidate(
                    warranty_period=period,
                    warranty_type=determine_warranty_type(window),
                    confidence=TEXT_PATTERN_CONFIDENCE,
                    source_strategy="text_pattern",
                    provenance_text=match.group(0),
                )
            )
    return warranties


def categorize_product(product_name: str, merchant_name: str) -> str:
    for category, product_pattern, merchant_pattern in PRODUCT_CATEGORIES:
        if product_pattern.search(product_name):
            return category
        if merchant_pattern is not None and merchant_pattern.search(merchant_name or ""):
            return category
    return "general"


def _warranty_from_item_name(item_name: str) -> Optional[tuple[WarrantyPeriod, str]]:
    for pattern in ITEM_NAME_WARRANTY_PATTERNS:
        match = pattern.search(item_name)
        if match:
            years = int(match.group(1)) if pattern.groups and match.group(1) else 1
            return WarrantyPeriod(years=years), match.group(0)
    return None


def detect_from_items(context: WarrantyContext) -> list[WarrantyCandidate]:
    warranties = []
    for item in context.items:
        category = categorize_product(item.name, context.merchant_name)
        default = CATEGORY_DEFAULTS.get(category)
        if default:
            period, warranty_type, coverage = default
            warranties.append(
                WarrantyCandidate(
                    item_name=item.name,
                    category=category,
                    warranty_period=period,
                    warranty_type=warranty_type,
                    coverage=coverage,
                    confidence=CATEGORY_DEFAULT_CONFIDENCE,
                    source_strategy="item_category",
                )
            )

        named = _warranty_from_item_name(item.name)
        if named:
            period, matched_text = named
            warranties.append(
                WarrantyCandidate(
                    item_name=item.name,
                    warranty_period=period,
                    warranty_type="extended",
                    confidence=ITEM_NAME_CONFIDENCE,
                    source_strategy="item_name",
                    provenance_text=matched_text,
                )
            )
    return warranties


def detect_from_merchant(context: WarrantyContext) -> list[WarrantyCandidate]:
    merchant = context.merchant_name or ""
    if not merchant:
        return []
    lowered = merchant.lower()
    warranties = []

    if any(keyword in lowered for keyword in ELECTRONICS_STORE_KEYWORDS):
        warranties.append(
            WarrantyCandidate(
                merchant_name=merchant,
                warranty_type="manufacturer",
                warranty_period=WarrantyPeriod(years=1),
                coverage="defects and malfunctions",
                confidence=ELECTRONICS_STORE_CONFIDENCE,
                source_strategy="merchant_category",
            )
        )

    if context.total_amount > context.settings.high_value_threshold:
        warranties.append(
            WarrantyCandidate(
                merchant_name=merchant,
                warranty_type="extended_available",
                notes="Extended warranty may be available for high-value purchase",
                confidence=HIGH_VALUE_CONFIDENCE,
                source_strategy="purchase_amount",
            )
        )

    key = find_known_merchant(merchant) or lowered
    for retailer, (warranty_type, period, notes, confidence) in MERCHANT_POLICIES.items():
        if retailer in key:
            warranties.append(
                WarrantyCandidate(
                    merchant_name=merchant,
                    warranty_type=warranty_type,
                    warranty_period=period,
                    notes=notes,
                    confidence=confidence,
                    source_strategy="merchant_policy",
                )
            )
            break
    return warranties


def _duration_value(raw: str) -> int:
    return int(raw) if raw.isdigit() else NUMBER_WORDS[raw.lower()]


def detect_from_phrases(context: WarrantyContext) -> list[WarrantyCandidate]:
    warranties = []
    for sentence in re.split(r"[\n.;!?]+", context.text):
        sentence = sentence.strip()
        if not sentence or not WARRANTY_SENTENCE.search(sentence):
            continue
        match = DURATION_PHRASE.search(sentence)
        if not match:
            continue
        warranties.append(
            WarrantyCandidate(
                warranty_period=period_from(_duration_value(match.group(1)), match.group(2)),
                warranty_type=determine_warranty_type(sentence),
                confidence=NLP_PHRASE_CONFIDENCE,
                source_strategy="nlp_phrase",
                provenance_text=sentence,
            )
        )
    return warranties


def extract_serial_numbers(text: str) -> list[str]:
    serials: list[str] = []
    for pattern in SERIAL_PATTERNS:
        for match in pattern.finditer(text):
            code = match.group(1).upper()
            if code not in serials:
                serials.append(code)
    return serials


def detect_from_serial_numbers(context: WarrantyContext) -> list[WarrantyCandidate]:
    return [
        WarrantyCandidate(
            warranty_type="manufacturer",
            serial_number=serial,
            notes="Serial number found - register the product for warranty coverage",
            confidence=SERIAL_NUMBER_CONFIDENCE,
            source_strategy="serial_number",
        )
        for serial in extract_serial_numbers(context.text)
    ]


def detect_from_product_lookup(context: WarrantyContext) -> list[WarrantyCandidate]:
    if context.product_lookup is None:
        return []
    warranties = []
    for item in context.items:
        info = context.product_lookup.lookup(item.name)
        if info is None:
            continue
        warranties.append(
            WarrantyCandidate(
                item_name=item.name,
                manufacturer=info.manufacturer,
                product_model=info.model,
                warranty_period=info.warranty_period,
                warranty_type=info.warranty_type,
                coverage=info.coverage,
                confidence=PRODUCT_LOOKUP_CONFIDENCE,
                source_strategy="product_lookup",
            )
        )
    return warranties


WARRANTY_STRATEGIES: tuple[tuple[str, WarrantyStrategy], ...] = (
    ("text_pattern", detect_from_text),
    ("item_category", detect_from_items),
    ("merchant", detect_from_merchant),
    ("nlp_phrase", detect_from_phrases),
    ("serial_number", detect_from_serial_numbers),
    ("product_lookup", detect_from_product_lookup),
)


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def validate_warranties(
    warranties: list[WarrantyCandidate],
    settings: Settings,
) -> list[WarrantyCandidate]:
    """Drop candidates with no substance or with implausible periods."""
    valid = []
    for warranty in warranties:
        has_period = warranty.warranty_period is not None and not warranty.warranty_period.is_empty
        if not warranty.warranty_type and not has_period:
            logger.debug("warranty_rejected | source=%s | reason=empty", warranty.source_strategy)
            continue
        if warranty.warranty_period is not None and warranty.warranty_period.exceeds(
            settings.max_warranty_years,
            settings.max_warranty_months,
            settings.max_warranty_days,
        ):
            logger.debug(
                "warranty_rejected | source=%s | period=%s | reason=out_of_bounds",
                warranty.source_strategy,
                warranty.warranty_period.describe(),
            )
            continue
        valid.append(warranty)
    return valid


def calibrate_confidence(warranty: WarrantyCandidate, text: str) -> float:
    confidence = warranty.confidence
    if warranty.provenance_text and warranty.provenance_text in text:
        confidence += 0.2
    if warranty.warranty_period is not None and not warranty.warranty_period.is_empty:
        confidence += 0.1
    if warranty.warranty_type in KNOWN_WARRANTY_TYPES:
        confidence += 0.1
    return min(confidence, 1.0)


def compute_expiration(purchase_date: date, period: WarrantyPeriod) -> date:
    """Add years, then months, then days. Month ends clamp (Jan 31 + 1 month = Feb 28/29)."""
    expires = purchase_date + relativedelta(years=period.years)
    expires = expires + relativedelta(months=period.months)
    return expires + timedelta(days=period.days)


def finalize_warranties(
    warranties: list[WarrantyCandidate],
    text: str,
    purchase_date: Optional[date],
    settings: Settings,
) -> list[WarrantyCandidate]:
    """Validate, calibrate and date fused warranty candidates."""
    finalized = []
    for warranty in validate_warranties(warranties, settings):
        updates = {"confidence": calibrate_confidence(warranty, text)}
        if purchase_date is not None and warranty.warranty_period is not None:
            if not warranty.warranty_period.is_empty:
                updates["expiration_date"] = compute_expiration(purchase_date, warranty.warranty_period)
        finalized.append(warranty.model_copy(update=updates))
    return finalized


def warranty_recommendations(
    warranties: list[WarrantyCandidate],
    items: list[LineItemCandidate],
    today: date,
    settings: Settings,
) -> list[str]:
    recommendations = []
    if not warranties:
        recommendations.append("No warranties detected - consider checking product documentation")

    covered = {warranty.item_name for warranty in warranties if warranty.item_name}
    uncovered = [item for item in items if item.name not in covered]
    if items and uncovered:
        recommendations.append(f"{len(uncovered)} items may not have warranty coverage")

    soon = today + timedelta(days=settings.expiring_soon_days)
    expiring = [
        warranty
        for warranty in warranties
        if warranty.expiration_date is not None and today < warranty.expiration_date < soon
    ]
    if expiring:
        recommendations.append(
            f"{len(expiring)} warranties expiring within {settings.expiring_soon_days} days"
        )
    return recommendations
