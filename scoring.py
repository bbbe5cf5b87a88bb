"""
scoring.py - Final confidence score and cross-field validation.

Confidence blends recognition confidence with which core fields were
actually found:

    recognition_confidence * 0.4
    + 0.25  merchant found (not a generic placeholder, longer than 3 chars)
    + 0.25  total > 0
    + 0.10 * min(item_count / 3, 1)

Validation compares the line-item sum with the declared total and attaches
non-fatal flags. Nothing here ever blocks a result.
"""

from __future__ import annotations

from typing import Optional

from config import Settings
from errors import ErrorKind
from fields import is_generic_merchant
from logging_config import get_logger
from models import ExtractionFlag, LineItemCandidate

logger = get_logger(__name__)

# -- Confidence weights --

RECOGNITION_WEIGHT = 0.4
MERCHANT_WEIGHT = 0.25
TOTAL_WEIGHT = 0.25
ITEMS_WEIGHT = 0.1
ITEMS_FOR_FULL_CREDIT = 3
# Three or more items earn the full item bonus; fewer earn a share.

MIN_MERCHANT_LENGTH = 3

LOW_ITEM_CONFIDENCE = 0.5
# Items below this are called out in the suggestions list.


def compute_confidence(
    recognition_confidence: float,
    merchant_name: Optional[str],
    total_amount: float,
    item_count: int,
) -> float:
    score = recognition_confidence * RECOGNITION_WEIGHT

    if (
        merchant_name
        and not is_generic_merchant(merchant_name)
        and len(merchant_name.strip()) > MIN_MERCHANT_LENGTH
    ):
        score += MERCHANT_WEIGHT
    if total_amount > 0:
        score += TOTAL_WEIGHT
    score += ITEMS_WEIGHT * min(item_count / ITEMS_FOR_FULL_CREDIT, 1.0)

    score = max(0.0, min(1.0, round(score, 4)))
    logger.debug(
        "confidence_score | recognition=%.2f | merchant=%r | total=%.2f | items=%s | score=%.2f",
        recognition_confidence,
        merchant_name,
        total_amount,
        item_count,
        score,
    )
    return score


def validate_totals(
    items: list[LineItemCandidate],
    declared_total: float,
    settings: Settings,
) -> Optional[ExtractionFlag]:
    """Flag when the item sum strays from the declared total beyond tolerance."""
    if declared_total <= 0 or not items:
        return None

    computed = round(sum(item.total_price for item in items), 2)
    difference = round(abs(computed - declared_total), 2)
    if difference <= settings.validation_tolerance_pct * declared_total:
        return None

    percent = round(difference / declared_total * 100.0, 1)
    logger.warning(
        "validation_mismatch | declared=%.2f | computed=%.2f | difference=%.2f | pct=%.1f",
        declared_total,
        computed,
        difference,
        percent,
    )
    return ExtractionFlag(
        kind=ErrorKind.VALIDATION_MISMATCH,
        message=(
            f"Item total (${computed:.2f}) doesn't match receipt total "
            f"(${declared_total:.2f}) - verify extracted items"
        ),
        details={
            "declared_total": declared_total,
            "computed_total": computed,
            "difference": difference,
            "difference_pct": percent,
        },
    )


def low_confidence_flags(
    result_quality_score: float,
    confidence: float,
    settings: Settings,
) -> list[ExtractionFlag]:
    flags = []
    if result_quality_score < settings.result_quality_low_threshold:
        flags.append(
            ExtractionFlag(
                kind=ErrorKind.LOW_CONFIDENCE_RESULT,
                message="Recognized text quality is low - verify the extracted fields",
                details={"result_quality_score": result_quality_score},
            )
        )
    if confidence < settings.low_confidence_threshold:
        flags.append(
            ExtractionFlag(
                kind=ErrorKind.LOW_CONFIDENCE_RESULT,
                message="Overall extraction confidence is low - manual review recommended",
                details={"confidence": confidence},
            )
        )
    return flags


def extraction_suggestions(items: list[LineItemCandidate]) -> list[str]:
    suggestions = []
    if not items:
        suggestions.append("No line items detected - consider manual entry")
    weak = [item for item in items if item.confidence < LOW_ITEM_CONFIDENCE]
    if weak:
        suggestions.append(f"{len(weak)} items have low confidence - please verify")
    return suggestions
