"""
main.py - CLI for the receipt extraction engine.

Modes:
1. single image:  --image PATH
2. reprocess:     --ref REF --store DIR
3. batch:         --batch DIR (every image file in a directory)
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Optional

from config import load_settings
from errors import InputError, ReceiptPipelineError
from explain import format_error_json, format_extraction, format_extraction_json
from image_store import LocalImageStore
from logging_config import get_logger, setup_logging
from models import QualityHint, RecognitionRequest
from pipeline import ReceiptPipeline

logger = get_logger("receipt-extract")

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp", ".gif"}
BOX_CHAR = "="


def read_image(image_path: str) -> bytes:
    """Read an image file, mapping filesystem problems to InputError."""
    path = Path(str(image_path).strip())
    if not str(image_path).strip():
        raise InputError("Image path cannot be empty", {"code": "MISSING_IMAGE"})
    if not path.is_file():
        raise InputError(
            f"Image not found: {image_path}\nProvide a valid file path with --image",
            {"code": "IMAGE_NOT_FOUND", "path": str(path)},
        )
    data = path.read_bytes()
    logger.info("image_loaded | path=%s | bytes=%s", path, len(data))
    return data


def _print_summary_table(results: list[tuple[str, str, float, str]]) -> None:
    """Print a formatted summary table for batch mode results."""
    print(f"\n{BOX_CHAR * 60}")
    print(f"  SUMMARY - {len(results)} receipt(s) processed")
    print(f"{BOX_CHAR * 60}")
    print()
    print(f"  {'Receipt':<28} {'Merchant':<20} {'Total':>8}")
    print(f"  {'-' * 28} {'-' * 20} {'-' * 8}")

    for filename, merchant, total, status in results:
        short_name = filename[:26] + ".." if len(filename) > 28 else filename
        short_merchant = merchant[:18] + ".." if len(merchant) > 20 else merchant
        amount = f"{total:>8.2f}" if status == "ok" else f"{status:>8}"
        print(f"  {short_name:<28} {short_merchant:<20} {amount}")

    print()
    print(f"{BOX_CHAR * 60}")


def run_batch(pipeline: ReceiptPipeline, directory: str, request_fields: dict) -> int:
    """Process every image in a directory. Returns the number of failures."""
    receipts_dir = Path(directory)
    if not receipts_dir.is_dir():
        raise InputError(f"Directory not found: {directory}", {"code": "IMAGE_NOT_FOUND"})

    image_files = sorted(
        file
        for file in receipts_dir.iterdir()
        if file.is_file() and file.suffix.lower() in IMAGE_SUFFIXES
    )
    if not image_files:
        logger.warning("batch_warning | reason='no image files found' | path=%s", receipts_dir)
        print(f"No image files found in {receipts_dir}/")
        return 0

    logger.info("batch_start | image_count=%s | directory=%s", len(image_files), receipts_dir)
    results: list[tuple[str, str, float, str]] = []

    for index, file in enumerate(image_files, start=1):
        print(f"\n{BOX_CHAR * 60}")
        print(f"  Receipt {index}/{len(image_files)}: {file.name}")
        print(f"{BOX_CHAR * 60}")
        start = time.monotonic()
        try:
            result = pipeline.process(
                RecognitionRequest(image_bytes=file.read_bytes(), image_ref=file.name, **request_fields)
            )
        except ReceiptPipelineError as exc:
            logger.error(
                "batch_receipt_error | file=%s | kind=%s | error=%s",
                file.name,
                exc.kind.value,
                exc.message,
            )
            print(f"\n  X {exc.kind.value} processing {file.name}: {exc.message}\n")
            results.append((file.name, "-", 0.0, exc.kind.value))
            continue

        print(format_extraction(result))
        logger.info(
            "batch_receipt_complete | file=%s | merchant=%r | confidence=%.2f | duration_s=%.2f",
            file.name,
            result.merchant_name,
            result.confidence,
            time.monotonic() - start,
        )
        results.append((file.name, result.merchant_name, result.total_amount, "ok"))

    _print_summary_table(results)
    failed = sum(1 for *_, status in results if status != "ok")
    logger.info("batch_complete | success=%s | failed=%s", len(results) - failed, failed)
    return failed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="receipt-extract",
        description=(
            "Receipt & Warranty Extraction Engine\n"
            "Turns a receipt photo into merchant, total, date, line items "
            "and warranty information."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --image receipt.jpg\n"
            "  %(prog)s --image receipt.jpg --quality-hint accurate --budget 0.01 --json\n"
            "  %(prog)s --ref 2024/03/receipt.jpg --store ./images\n"
            "  %(prog)s --batch ./receipts --verbose\n"
        ),
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", "-i", type=str, help="Path to a receipt image file")
    source.add_argument("--ref", type=str, help="Reference of a stored image to reprocess (needs --store)")
    source.add_argument("--batch", "-b", type=str, help="Process every image in this directory")
    parser.add_argument("--store", type=str, help="Root directory of the image store used by --ref")
    parser.add_argument(
        "--quality-hint",
        choices=[hint.value for hint in QualityHint],
        default=QualityHint.AUTO.value,
        help="Prefer fast or accurate providers (default: auto)",
    )
    parser.add_argument(
        "--budget",
        type=float,
        default=None,
        help="Maximum cost per image in USD; 0 restricts to the free local engine",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=30000,
        help="Deadline for the whole extraction in milliseconds (default: 30000)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON instead of formatted text",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the extraction engine."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    if args.ref and not args.store:
        parser.error("--ref requires --store DIR")

    request_fields = {
        "quality_hint": QualityHint(args.quality_hint),
        "budget_limit": args.budget,
        "timeout_ms": args.timeout_ms,
    }

    try:
        store = LocalImageStore(args.store) if args.store else None
        pipeline = ReceiptPipeline(settings=load_settings(), image_store=store)

        if args.batch:
            logger.info("cli_mode | mode=batch | directory=%s", args.batch)
            failed = run_batch(pipeline, args.batch, request_fields)
            if failed:
                raise SystemExit(1)
            return

        if args.ref:
            logger.info("cli_mode | mode=reprocess | ref=%s | store=%s", args.ref, args.store)
            result = pipeline.reprocess(args.ref, **request_fields)
        else:
            logger.info("cli_mode | mode=single | image=%s", args.image)
            request = RecognitionRequest(
                image_bytes=read_image(args.image),
                image_ref=Path(args.image).name,
                **request_fields,
            )
            result = pipeline.process(request)

        if args.json:
            print(json.dumps(format_extraction_json(result), indent=2))
        else:
            print(format_extraction(result))
    except ReceiptPipelineError as exc:
        logger.error("cli_error | kind=%s | error=%s", exc.kind.value, exc.message)
        if args.json:
            print(json.dumps(format_error_json(exc), indent=2))
        else:
            print(f"\nError ({exc.kind.value}): {exc.message}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    main()
