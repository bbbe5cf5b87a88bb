"""
fusion.py - Deduplication and fusion of candidates from competing strategies.

Candidates are merged left to right: each one is compared against the
already-accepted set, and a match merges the pair with the higher-confidence
candidate winning. The winner keeps its own values and absorbs fields it is
missing from the loser.

Match rules:
- line items: name similarity >= threshold AND prices within tolerance
- warranties: name similarity >= threshold (both named), OR same type with
  an identical period

Similarity is pluggable (`similarity_fn(a, b) -> 0..100`); the default is
rapidfuzz's `fuzz.ratio` over normalized names.
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar

from pydantic import BaseModel
from rapidfuzz import fuzz

from logging_config import get_logger
from models import LineItemCandidate, WarrantyCandidate
from normalize import normalize_item_name

logger = get_logger(__name__)

C = TypeVar("C", bound=BaseModel)

SimilarityFn = Callable[[str, str], float]
MatchFn = Callable[[C, C], bool]

ITEM_MERGE_FIELDS = ("unit_price", "category", "taxable", "department_code")
WARRANTY_MERGE_FIELDS = (
    "item_name",
    "warranty_period",
    "warranty_type",
    "category",
    "coverage",
    "manufacturer",
    "product_model",
    "serial_number",
    "merchant_name",
    "notes",
)


def name_similarity(left: str, right: str) -> float:
    """Default similarity: rapidfuzz ratio on normalized names, 0-100."""
    a = normalize_item_name(left)
    b = normalize_item_name(right)
    if not a or not b:
        return 0.0
    return float(fuzz.ratio(a, b))


def prices_match(left: float, right: float, tolerance_pct: float) -> bool:
    average = (left + right) / 2.0
    if average <= 0:
        return left == right
    return abs(left - right) <= tolerance_pct * average


def merge_candidates(winner: C, loser: C, fields: tuple[str, ...]) -> C:
    """Winner keeps its values; fields it lacks are taken from the loser."""
    updates = {
        field: getattr(loser, field)
        for field in fields
        if getattr(winner, field) is None and getattr(loser, field) is not None
    }
    return winner.model_copy(update=updates) if updates else winner


def fuse(
    candidates: list[C],
    matches: MatchFn,
    merge_fields: tuple[str, ...],
) -> list[C]:
    """Generic left-to-right fusion.

    After a merge the new representative is re-checked against the other
    accepted candidates, so no two outputs ever satisfy `matches`.
    """
    accepted: list[C] = []
    for candidate in candidates:
        current = candidate
        slot: Optional[int] = None
        while True:
            index = next(
                (i for i, existing in enumerate(accepted) if matches(current, existing)),
                None,
            )
            if index is None:
                if slot is None:
                    accepted.append(current)
                else:
                    accepted.insert(slot, current)
                break
            slot = index if slot is None else min(slot, index)
            existing = accepted.pop(index)
            if current.confidence > existing.confidence:
                winner, loser = current, existing
            else:
                winner, loser = existing, current
            current = merge_candidates(winner, loser, merge_fields)
            if current is existing or current == existing:
                # Nothing changed: the accepted entry stands as it was.
                accepted.insert(index, existing)
                break
    return accepted


def item_matcher(
    similarity_fn: SimilarityFn,
    name_threshold: float,
    price_tolerance_pct: float,
) -> Callable[[LineItemCandidate, LineItemCandidate], bool]:
    def matches(left: LineItemCandidate, right: LineItemCandidate) -> bool:
        if not prices_match(left.total_price, right.total_price, price_tolerance_pct):
            return False
        return similarity_fn(left.name, right.name) >= name_threshold

    return matches


def warranty_matcher(
    similarity_fn: SimilarityFn,
    name_threshold: float,
) -> Callable[[WarrantyCandidate, WarrantyCandidate], bool]:
    def matches(left: WarrantyCandidate, right: WarrantyCandidate) -> bool:
        if left.item_name and right.item_name:
            if similarity_fn(left.item_name, right.item_name) >= name_threshold:
                return True
        return (
            left.warranty_type == right.warranty_type
            and left.warranty_period == right.warranty_period
        )

    return matches


def fuse_items(
    candidates: list[LineItemCandidate],
    similarity_fn: Optional[SimilarityFn] = None,
    name_threshold: float = 80.0,
    price_tolerance_pct: float = 0.05,
) -> list[LineItemCandidate]:
    matcher = item_matcher(similarity_fn or name_similarity, name_threshold, price_tolerance_pct)
    fused = fuse(candidates, matcher, ITEM_MERGE_FIELDS)
    logger.info("fusion_items | candidates=%s | fused=%s", len(candidates), len(fused))
    return fused


def fuse_warranties(
    candidates: list[WarrantyCandidate],
    similarity_fn: Optional[SimilarityFn] = None,
    name_threshold: float = 80.0,
) -> list[WarrantyCandidate]:
    matcher = warranty_matcher(similarity_fn or name_similarity, name_threshold)
    fused = fuse(candidates, matcher, WARRANTY_MERGE_FIELDS)
    logger.info("fusion_warranties | candidates=%s | fused=%s", len(candidates), len(fused))
    return fused
