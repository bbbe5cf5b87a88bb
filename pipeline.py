"""
pipeline.py - Orchestration of one receipt extraction run.

Stages:
1. assess image quality and select providers
2. recognize text (with one fallback escalation at most)
3. field + line-item strategies in parallel, then item fusion
4. warranty strategies in parallel, then warranty fusion
5. confidence scoring and validation

The request deadline bounds the whole run. Fatal problems raise a
`ReceiptPipelineError` subclass; everything else is recorded on the
result's metadata.
"""

from __future__ import annotations

import hashlib
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, datetime, timezone
from functools import partial
from typing import Any, Callable, Mapping, Optional

from config import Settings, load_settings
from errors import InputError, ReceiptPipelineError, RecognitionTimeout
from fields import (
    UNKNOWN_MERCHANT,
    categorize_receipt,
    date_candidates,
    merchant_candidates,
    pick_best,
    total_candidates,
)
from fusion import SimilarityFn, fuse_items, fuse_warranties, name_similarity
from image_quality import QUALITY_GOOD, assess_image_quality, ensure_image_present
from image_store import ImageStore
from line_items import LINE_ITEM_STRATEGIES, enrich_items
from logging_config import get_logger
from models import (
    ExtractionMetadata,
    ExtractionResult,
    ProviderName,
    QualityHint,
    RecognitionRequest,
    RecognitionResult,
)
from providers import ProviderRegistry, select_provider
from recognition import (
    TextRecognitionProvider,
    build_providers,
    quality_label,
    recognize_with_fallback,
    remaining_seconds,
)
from scoring import compute_confidence, extraction_suggestions, low_confidence_flags, validate_totals
from warranty import (
    WARRANTY_STRATEGIES,
    ProductLookup,
    StaticProductCatalog,
    WarrantyContext,
    finalize_warranties,
    warranty_recommendations,
)

logger = get_logger(__name__)

TOTAL_STAGES = 5
DATE_DEFAULT_SOURCE = "default_today"


class ReceiptPipeline:
    """Receipt and warranty extraction engine.

    Collaborators are injectable so tests and deployments can swap OCR
    providers, the product catalog, the image store and the similarity
    function without touching pipeline code.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[ProviderRegistry] = None,
        providers: Optional[Mapping[ProviderName, TextRecognitionProvider]] = None,
        product_lookup: Optional[ProductLookup] = None,
        image_store: Optional[ImageStore] = None,
        similarity_fn: Optional[SimilarityFn] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.settings = settings or load_settings()
        self.registry = registry or ProviderRegistry.from_settings(self.settings)
        self.providers = dict(providers) if providers is not None else build_providers(self.settings)
        self.product_lookup = product_lookup if product_lookup is not None else StaticProductCatalog()
        self.image_store = image_store
        self.similarity_fn = similarity_fn or name_similarity
        self._today = today or date.today

    # -- public operations --

    def process(self, request: RecognitionRequest) -> ExtractionResult:
        """Run the full extraction pipeline for one request."""
        return self._run(request, reprocessed=False)

    def reprocess(
        self,
        image_ref: str,
        quality_hint: QualityHint = QualityHint.AUTO,
        budget_limit: Optional[float] = None,
        timeout_ms: int = 30000,
    ) -> ExtractionResult:
        """Re-run extraction on a stored image. Nothing is uploaded."""
        request = RecognitionRequest(
            image_ref=image_ref,
            quality_hint=quality_hint,
            budget_limit=budget_limit,
            timeout_ms=timeout_ms,
        )
        return self._run(request, reprocessed=True)

    # -- stages --

    def _load_image(self, request: RecognitionRequest) -> bytes:
        if request.image_bytes:
            return request.image_bytes
        if request.image_ref:
            if self.image_store is None:
                raise InputError(
                    "image_ref given but no image store is configured",
                    {"code": "MISSING_IMAGE", "image_ref": request.image_ref},
                )
            return self.image_store.fetch(request.image_ref)
        raise InputError("No image provided", {"code": "MISSING_IMAGE"})

    def _run_strategies(
        self,
        stage: str,
        tasks: list[tuple[str, Callable[[], list]]],
        deadline: float,
        strategy_errors: list[str],
    ) -> dict[str, list]:
        """Run independent strategies concurrently within the deadline.

        A failing strategy contributes no candidates; its error is logged
        and recorded. Running out of time aborts the whole run.
        """
        remaining = remaining_seconds(deadline)
        if remaining <= 0:
            raise RecognitionTimeout(f"Request deadline elapsed before {stage}", {"stage": stage})

        executor = ThreadPoolExecutor(
            max_workers=self.settings.strategy_workers,
            thread_name_prefix=f"{stage}-strategy",
        )
        try:
            futures = {executor.submit(task): name for name, task in tasks}
            _, pending = wait(futures, timeout=remaining)
            if pending:
                for future in pending:
                    future.cancel()
                raise RecognitionTimeout(
                    f"{stage} strategies did not finish within the request deadline",
                    {"stage": stage, "pending": sorted(futures[f] for f in pending)},
                )

            results: dict[str, list] = {}
            for future, name in futures.items():
                try:
                    results[name] = future.result()
                except Exception as exc:
                    logger.warning(
                        "strategy_failed | stage=%s | strategy=%s | error_type=%s | error=%s",
                        stage,
                        name,
                        type(exc).__name__,
                        exc,
                        exc_info=True,
                    )
                    strategy_errors.append(f"{name}: {type(exc).__name__}: {exc}")
                    results[name] = []
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, request: RecognitionRequest, reprocessed: bool) -> ExtractionResult:
        started = time.monotonic()
        deadline = started + request.timeout_ms / 1000.0
        settings = self.settings

        logger.info("%s", "─" * 50)
        logger.info(
            "pipeline_start | ref=%s | hint=%s | budget=%s | timeout_ms=%s | reprocess=%s",
            request.image_ref,
            request.quality_hint.value,
            request.budget_limit,
            request.timeout_ms,
            reprocessed,
        )

        try:
            return self._execute(request, reprocessed, started, deadline, settings)
        except ReceiptPipelineError as exc:
            logger.error(
                "pipeline_failed | kind=%s | error=%s | duration_s=%.2f",
                exc.kind.value,
                exc.message,
                time.monotonic() - started,
            )
            raise

    def _execute(
        self,
        request: RecognitionRequest,
        reprocessed: bool,
        started: float,
        deadline: float,
        settings: Settings,
    ) -> ExtractionResult:
        # Stage 1: quality + selection.
        logger.info("pipeline_stage | stage=1/%s | name=select | status=start", TOTAL_STAGES)
        image_bytes = self._load_image(request)
        ensure_image_present(image_bytes)
        quality = assess_image_quality(image_bytes)
        selection = select_provider(quality, request, self.registry, settings)

        # Stage 2: recognition.
        logger.info("pipeline_stage | stage=2/%s | name=recognize | status=start", TOTAL_STAGES)
        outcome = recognize_with_fallback(
            image_bytes,
            selection,
            self.providers,
            quality,
            settings,
            deadline,
        )
        snapshot: RecognitionResult = outcome.result
        logger.info(
            "pipeline_stage | stage=2/%s | name=recognize | status=complete | provider=%s | fallback_used=%s | score=%.2f",
            TOTAL_STAGES,
            outcome.provider.value,
            outcome.fallback_used,
            outcome.score,
        )

        # Stage 3: fields and line items.
        today = self._today()
        strategy_errors: list[str] = []
        field_tasks: list[tuple[str, Callable[[], list]]] = [
            (name, partial(strategy, snapshot, settings)) for name, strategy in LINE_ITEM_STRATEGIES
        ]
        field_tasks += [
            ("merchant", partial(merchant_candidates, snapshot)),
            ("total", partial(total_candidates, snapshot)),
            ("date", partial(date_candidates, snapshot, today)),
        ]
        extracted = self._run_strategies("fields", field_tasks, deadline, strategy_errors)

        item_candidates = [
            candidate for name, _ in LINE_ITEM_STRATEGIES for candidate in extracted[name]
        ]
        fused_items = fuse_items(
            item_candidates,
            similarity_fn=self.similarity_fn,
            name_threshold=settings.name_similarity_threshold,
            price_tolerance_pct=settings.price_tolerance_pct,
        )

        field_sources: dict[str, str] = {}
        recommendations: list[str] = [
            r for r in quality.recommendations if r != QUALITY_GOOD
        ]

        merchant = pick_best(extracted["merchant"])
        merchant_name = merchant.value if merchant else UNKNOWN_MERCHANT
        field_sources["merchant_name"] = merchant.source_strategy if merchant else "none"

        total = pick_best(extracted["total"])
        total_amount = total.value if total else 0.0
        field_sources["total_amount"] = total.source_strategy if total else "none"

        purchase = pick_best(extracted["date"])
        if purchase is not None:
            purchase_date = purchase.value
            field_sources["purchase_date"] = purchase.source_strategy
        else:
            purchase_date = today
            field_sources["purchase_date"] = DATE_DEFAULT_SOURCE
            recommendations.append("Purchase date not found - using processing date")

        items = enrich_items(fused_items, merchant_name)
        category = categorize_receipt(merchant_name, items)
        logger.info(
            "pipeline_stage | stage=3/%s | name=fields | status=complete | merchant=%r | total=%.2f | date=%s | items=%s",
            TOTAL_STAGES,
            merchant_name,
            total_amount,
            purchase_date,
            len(items),
        )

        # Stage 4: warranties.
        context = WarrantyContext(
            text=snapshot.text,
            items=items,
            merchant_name=merchant_name,
            total_amount=total_amount,
            settings=settings,
            product_lookup=self.product_lookup,
        )
        warranty_tasks = [(name, partial(strategy, context)) for name, strategy in WARRANTY_STRATEGIES]
        detected = self._run_strategies("warranty", warranty_tasks, deadline, strategy_errors)
        warranty_candidates = [
            candidate for name, _ in WARRANTY_STRATEGIES for candidate in detected[name]
        ]
        warranties = finalize_warranties(
            fuse_warranties(
                warranty_candidates,
                similarity_fn=self.similarity_fn,
                name_threshold=settings.name_similarity_threshold,
            ),
            snapshot.text,
            purchase_date,
            settings,
        )
        logger.info(
            "pipeline_stage | stage=4/%s | name=warranty | status=complete | candidates=%s | warranties=%s",
            TOTAL_STAGES,
            len(warranty_candidates),
            len(warranties),
        )

        # Stage 5: scoring and validation.
        if remaining_seconds(deadline) <= 0:
            raise RecognitionTimeout("Request deadline elapsed before scoring", {"stage": "score"})

        confidence = compute_confidence(snapshot.confidence, merchant_name, total_amount, len(items))
        flags = low_confidence_flags(outcome.score, confidence, settings)
        mismatch = validate_totals(items, total_amount, settings)
        if mismatch is not None:
            flags.insert(0, mismatch)

        recommendations += extraction_suggestions(items)
        recommendations += warranty_recommendations(warranties, items, today, settings)

        strategy_counts = {name: len(found) for name, found in {**extracted, **detected}.items()}
        elapsed_ms = (time.monotonic() - started) * 1000.0

        metadata = ExtractionMetadata(
            provider=outcome.provider,
            selection_reason=selection.reason,
            fallback_used=outcome.fallback_used,
            recognition_confidence=snapshot.confidence,
            result_quality_score=outcome.score,
            result_quality_label=quality_label(outcome.score, settings),
            image_quality=quality,
            flags=flags,
            recommendations=recommendations,
            provider_errors=outcome.errors,
            strategy_errors=strategy_errors,
            strategy_counts=strategy_counts,
            field_sources=field_sources,
            image_sha256=hashlib.sha256(image_bytes).hexdigest(),
            image_ref=request.image_ref,
            processing_ms=round(elapsed_ms, 1),
            processed_at=datetime.now(timezone.utc),
            reprocessed=reprocessed,
            raw_text=snapshot.text,
        )
        result = ExtractionResult(
            merchant_name=merchant_name,
            total_amount=total_amount,
            purchase_date=purchase_date,
            items=items,
            warranties=warranties,
            category=category,
            confidence=confidence,
            metadata=metadata,
        )

        logger.info(
            "pipeline_complete | merchant=%r | total=%.2f | items=%s | warranties=%s | confidence=%.2f | flags=%s | duration_ms=%.0f",
            result.merchant_name,
            result.total_amount,
            len(result.items),
            len(result.warranties),
            result.confidence,
            [flag.kind.value for flag in flags],
            elapsed_ms,
        )
        return result


def process_image(
    image_bytes: bytes,
    pipeline: Optional[ReceiptPipeline] = None,
    **request_fields: Any,
) -> ExtractionResult:
    """Convenience wrapper: build a request around raw bytes and process it."""
    engine = pipeline or ReceiptPipeline()
    return engine.process(RecognitionRequest(image_bytes=image_bytes, **request_fields))
