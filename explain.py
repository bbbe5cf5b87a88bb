"""
explain.py - Human-readable and JSON-ready extraction formatting.

This module converts an `ExtractionResult` into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for storage and logging
"""

from __future__ import annotations

from typing import Any

from errors import ReceiptPipelineError
from logging_config import get_logger
from models import ExtractionResult

logger = get_logger(__name__)

OUTPUT_WIDTH = 56
SEPARATOR = "=" * OUTPUT_WIDTH
MAX_ITEMS_DISPLAY = 15
MAX_NAME_WIDTH = 32


def _status(result: ExtractionResult) -> str:
    if result.confidence >= 0.8 and not result.has_flags:
        return "High Confidence"
    if result.confidence >= 0.5:
        return "Review Suggested"
    return "Low Confidence"


def _short(name: str) -> str:
    return name if len(name) <= MAX_NAME_WIDTH else name[: MAX_NAME_WIDTH - 2] + ".."


def format_extraction(result: ExtractionResult | None) -> str:
    """Format an ExtractionResult into a clean, human-readable text block."""
    if result is None:
        logger.error("explain_input_error | result_none=True | fallback=error_block")
        return f"\n{SEPARATOR}\n  ERROR: No extraction data available\n{SEPARATOR}\n"

    meta = result.metadata
    lines: list[str] = ["", SEPARATOR, f"  {_status(result)} - {result.confidence:.0%}", SEPARATOR, ""]

    lines.append(f"  Merchant:     {result.merchant_name}")
    lines.append(f"  Total:        ${result.total_amount:.2f}")
    lines.append(f"  Date:         {result.purchase_date or 'date unknown'}")
    lines.append(f"  Category:     {result.category}")
    provider_line = f"  Provider:     {meta.provider.value}"
    if meta.fallback_used:
        provider_line += " (fallback)"
    lines.append(provider_line)

    lines.append("")
    lines.append(f"  Items ({len(result.items)}):")
    if not result.items:
        lines.append("    • (no line items detected)")
    for item in result.items[:MAX_ITEMS_DISPLAY]:
        quantity = f"{item.quantity:g} x " if item.quantity != 1 else ""
        lines.append(f"    • {quantity}{_short(item.name):<{MAX_NAME_WIDTH}} ${item.total_price:>8.2f}")
    if len(result.items) > MAX_ITEMS_DISPLAY:
        lines.append(f"    • ... and {len(result.items) - MAX_ITEMS_DISPLAY} more item(s)")
    if result.items:
        lines.append(f"    Item sum: ${result.item_total:.2f}")

    if result.warranties:
        lines.append("")
        lines.append(f"  Warranties ({len(result.warranties)}):")
        for warranty in result.warranties:
            period = warranty.warranty_period.describe() if warranty.warranty_period else "unspecified"
            subject = warranty.item_name or warranty.merchant_name or "receipt"
            entry = f"    • {subject}: {warranty.warranty_type or 'general'}, {period}"
            if warranty.expiration_date:
                entry += f" (expires {warranty.expiration_date})"
            lines.append(entry)

    for flag in meta.flags:
        lines.append("")
        lines.append(f"  WARNING: {flag.kind.value}")
        lines.append(f"    {flag.message}")

    if meta.recommendations:
        lines.append("")
        lines.append("  Recommendations:")
        for recommendation in meta.recommendations:
            lines.append(f"    • {recommendation}")

    lines.append("")
    lines.append(SEPARATOR)
    lines.append("")
    return "\n".join(lines)


def format_extraction_json(result: ExtractionResult | None) -> dict[str, Any]:
    """Format an ExtractionResult as a JSON-compatible dictionary."""
    if result is None:
        logger.error("explain_json_input_error | result_none=True | fallback=error_payload")
        return {
            "status": "error",
            "error": {"kind": "InputError", "message": "No extraction data available"},
        }

    payload = result.model_dump(mode="json")
    payload["status"] = "flagged" if result.has_flags else "ok"
    payload["item_total"] = result.item_total
    return payload


def format_error_json(error: ReceiptPipelineError) -> dict[str, Any]:
    return {"status": "error", "error": error.to_dict()}
