"""
recognition.py - Text recognition boundary for the extraction pipeline.

This is the only module that knows anything about OCR engines. Every
adapter turns its engine's native response into a frozen
`RecognitionResult`; downstream strategies never see engine internals.

Adapters:
    LocalTesseractProvider   pytesseract, shared engine via RecognitionEngineManager
    GoogleVisionProvider     Vision REST images:annotate (requests)
    TextractProvider         AWS Textract analyze_document (boto3, lazy import)
    AzureReadProvider        Azure Read v3.2 submit + poll (requests)

Escalation:
    The primary provider's output is scored by `assess_result_quality`.
    A low score, an empty result, or an outright failure triggers exactly
    one attempt with the fallback provider. Provider calls are bounded by
    the request deadline; running out of time raises RecognitionTimeout.
"""

from __future__ import annotations

import base64
import io
import re
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from statistics import mean
from typing import Any, Callable, Mapping, Optional

import pytesseract
import requests
from PIL import Image, ImageFilter, ImageOps
from pytesseract import Output

from config import Settings
from errors import EngineUnavailable, NoTextFound, ProviderError, RecognitionTimeout
from logging_config import get_logger
from models import (
    ImageQualityProfile,
    ProviderName,
    ProviderSelection,
    RecognitionResult,
    RecognizedTable,
    TableCell,
    TextBlock,
)

logger = get_logger(__name__)

# -- Result quality --

RESULT_BASE_SCORE = 0.3
MIN_MEANINGFUL_TEXT = 20
# Text shorter than this is unlikely to hold a full receipt.

# -- Local engine --

MAX_OCR_HEIGHT = 2000
BINARIZE_THRESHOLD = 128
# PSM 4: a single column of text of variable sizes, which is how a
# receipt is laid out. Keeps one OCR line per printed line.
TESSERACT_CONFIG = "--oem 1 --psm 4 -c preserve_interword_spaces=1"

# -- Cloud engines --

GOOGLE_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"
GOOGLE_DEFAULT_CONFIDENCE = 0.8
AZURE_READ_PATH = "/vision/v3.2/read/analyze"
AZURE_POLL_INTERVAL_S = 0.5


class TextRecognitionProvider(ABC):
    """One OCR engine behind a uniform interface."""

    name: ProviderName

    @abstractmethod
    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        """Recognize text. Raises ProviderError on any engine failure."""


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Shared engine lifecycle
# ---------------------------------------------------------------------------


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class RecognitionEngineManager:
    """Lazily initializes one expensive engine and shares it process-wide.

    The first caller runs the factory; concurrent callers block on the same
    Future. A failed initialization is cached and re-raised to every later
    caller without retrying.
    """

    def __init__(self, factory: Callable[[], Any], name: str = "engine"):
        self._factory = factory
        self._name = name
        self._lock = threading.Lock()
        self._state = EngineState.UNINITIALIZED
        self._future: Optional[Future] = None

    @property
    def state(self) -> EngineState:
        return self._state

    def get(self, timeout: Optional[float] = None) -> Any:
        with self._lock:
            owner = self._future is None
            if owner:
                self._future = Future()
                self._state = EngineState.INITIALIZING
            future = self._future

        if owner:
            return self._initialize(future)

        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise RecognitionTimeout(
                f"Timed out waiting for {self._name} initialization",
                {"engine": self._name, "timeout_s": timeout},
            ) from exc

    def _initialize(self, future: Future) -> Any:
        started = time.monotonic()
        logger.info("engine_init | engine=%s | status=start", self._name)
        try:
            engine = self._factory()
        except Exception as exc:
            error = EngineUnavailable(
                f"{self._name} failed to initialize: {exc}",
                {"engine": self._name, "error_type": type(exc).__name__},
            )
            with self._lock:
                self._state = EngineState.FAILED
            future.set_exception(error)
            logger.error(
                "engine_init | engine=%s | status=failed | error_type=%s | error=%s",
                self._name,
                type(exc).__name__,
                exc,
            )
            raise error from exc

        with self._lock:
            self._state = EngineState.READY
        future.set_result(engine)
        logger.info(
            "engine_init | engine=%s | status=ready | duration_s=%.2f",
            self._name,
            time.monotonic() - started,
        )
        return engine


# ---------------------------------------------------------------------------
# Local engine (Tesseract)
# ---------------------------------------------------------------------------


def preprocess_for_ocr(image: Image.Image) -> Image.Image:
    """Grayscale, bound height, stretch contrast, sharpen and binarize."""
    prepared = ImageOps.grayscale(ImageOps.exif_transpose(image))
    if prepared.height > MAX_OCR_HEIGHT:
        width = max(1, round(prepared.width * MAX_OCR_HEIGHT / prepared.height))
        prepared = prepared.resize((width, MAX_OCR_HEIGHT), Image.Resampling.LANCZOS)
    prepared = ImageOps.autocontrast(prepared)
    prepared = prepared.filter(ImageFilter.SHARPEN)
    return prepared.point(lambda value: 255 if value >= BINARIZE_THRESHOLD else 0)


class TesseractEngine:
    """Initialized Tesseract handle: binary located, language configured."""

    def __init__(self, lang: str, version: str):
        self.lang = lang
        self.version = version

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        with Image.open(io.BytesIO(image_bytes)) as image:
            prepared = preprocess_for_ocr(image)

        data = pytesseract.image_to_data(
            prepared,
            lang=self.lang,
            config=TESSERACT_CONFIG,
            output_type=Output.DICT,
            timeout=max(1, int(timeout_s)),
        )
        return parse_tesseract_data(data)


def parse_tesseract_data(data: Mapping[str, list]) -> RecognitionResult:
    """Group Tesseract word rows into line blocks."""
    lines: dict[tuple[int, int, int], list[int]] = {}
    for index, raw_word in enumerate(data.get("text", [])):
        word = (raw_word or "").strip()
        try:
            conf = float(data["conf"][index])
        except (TypeError, ValueError):
            conf = -1.0
        if not word or conf < 0:
            continue
        key = (data["block_num"][index], data["par_num"][index], data["line_num"][index])
        lines.setdefault(key, []).append(index)

    blocks: list[TextBlock] = []
    word_confidences: list[float] = []
    for indexes in lines.values():
        confidences = [float(data["conf"][i]) / 100.0 for i in indexes]
        word_confidences.extend(confidences)
        left = min(int(data["left"][i]) for i in indexes)
        top = min(int(data["top"][i]) for i in indexes)
        right = max(int(data["left"][i]) + int(data["width"][i]) for i in indexes)
        bottom = max(int(data["top"][i]) + int(data["height"][i]) for i in indexes)
        blocks.append(
            TextBlock(
                text=" ".join(str(data["text"][i]).strip() for i in indexes),
                confidence=_clamp(mean(confidences)),
                bbox=(left, top, right - left, bottom - top),
            )
        )

    return RecognitionResult(
        text="\n".join(block.text for block in blocks),
        confidence=_clamp(mean(word_confidences)) if word_confidences else 0.0,
        blocks=tuple(blocks),
        provider=ProviderName.LOCAL,
    )


def create_tesseract_engine(settings: Settings) -> TesseractEngine:
    if settings.tesseract_cmd:
        pytesseract.pytesseract.tesseract_cmd = settings.tesseract_cmd
    version = pytesseract.get_tesseract_version()
    return TesseractEngine(lang=settings.tesseract_lang, version=str(version))


_shared_manager_lock = threading.Lock()
_shared_local_manager: Optional[RecognitionEngineManager] = None


def shared_local_engine(settings: Settings) -> RecognitionEngineManager:
    """Process-wide manager for the local engine."""
    global _shared_local_manager
    with _shared_manager_lock:
        if _shared_local_manager is None:
            _shared_local_manager = RecognitionEngineManager(
                lambda: create_tesseract_engine(settings),
                name=ProviderName.LOCAL.value,
            )
        return _shared_local_manager


class LocalTesseractProvider(TextRecognitionProvider):
    name = ProviderName.LOCAL

    def __init__(self, manager: RecognitionEngineManager):
        self._manager = manager

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        engine = self._manager.get(timeout=timeout_s)
        try:
            return engine.recognize(image_bytes, timeout_s)
        except (pytesseract.TesseractError, RuntimeError, OSError) as exc:
            raise ProviderError(self.name.value, f"{type(exc).__name__}: {exc}") from exc


# ---------------------------------------------------------------------------
# Cloud engines
# ---------------------------------------------------------------------------


def _bbox_from_points(xs: list[float], ys: list[float]) -> Optional[tuple[float, float, float, float]]:
    if not xs or not ys:
        return None
    return (min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))


class GoogleVisionProvider(TextRecognitionProvider):
    name = ProviderName.CLOUD_A

    def __init__(self, api_key: str, http: Any = None):
        self._api_key = api_key
        self._http = http or requests

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
                    "features": [{"type": "TEXT_DETECTION"}],
                }
            ]
        }
        try:
            response = self._http.post(
                GOOGLE_VISION_URL,
                params={"key": self._api_key},
                json=payload,
                timeout=timeout_s,
            )
        except requests.RequestException as exc:
            raise ProviderError(self.name.value, f"request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderError(self.name.value, f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(self.name.value, "response was not JSON") from exc

        annotation = (body.get("responses") or [{}])[0]
        if "error" in annotation:
            raise ProviderError(self.name.value, annotation["error"].get("message", "unknown error"))
        return self.parse_response(annotation)

    @staticmethod
    def parse_response(annotation: Mapping[str, Any]) -> RecognitionResult:
        words = annotation.get("textAnnotations") or []
        full = annotation.get("fullTextAnnotation") or {}

        text = full.get("text") or (words[0].get("description", "") if words else "")

        blocks = []
        for word in words[1:]:
            vertices = (word.get("boundingPoly") or {}).get("vertices") or []
            blocks.append(
                TextBlock(
                    text=word.get("description", ""),
                    confidence=_clamp(word.get("confidence", GOOGLE_DEFAULT_CONFIDENCE)),
                    bbox=_bbox_from_points(
                        [v.get("x", 0) for v in vertices],
                        [v.get("y", 0) for v in vertices],
                    ),
                    block_type="word",
                )
            )

        page_confidences = [
            block["confidence"]
            for page in full.get("pages", [])
            for block in page.get("blocks", [])
            if "confidence" in block
        ]
        if page_confidences:
            confidence = mean(page_confidences)
        elif text:
            confidence = GOOGLE_DEFAULT_CONFIDENCE
        else:
            confidence = 0.0

        return RecognitionResult(
            text=text.strip(),
            confidence=_clamp(confidence),
            blocks=tuple(blocks),
            provider=ProviderName.CLOUD_A,
        )


class TextractProvider(TextRecognitionProvider):
    name = ProviderName.CLOUD_B

    def __init__(
        self,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client: Any = None,
    ):
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._client = client

    def _make_client(self, timeout_s: float) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3
            from botocore.config import Config
        except ImportError as exc:
            raise ProviderError(
                self.name.value,
                "boto3 package is not installed. Install with: pip install boto3",
            ) from exc

        session = boto3.session.Session(
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            region_name=self._region,
        )
        return session.client(
            "textract",
            config=Config(
                connect_timeout=max(1.0, timeout_s),
                read_timeout=max(1.0, timeout_s),
                retries={"max_attempts": 1},
            ),
        )

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        client = self._make_client(timeout_s)
        try:
            from botocore.exceptions import BotoCoreError, ClientError
        except ImportError as exc:
            raise ProviderError(
                self.name.value,
                "botocore package is not installed. Install with: pip install boto3",
            ) from exc

        try:
            response = client.analyze_document(
                Document={"Bytes": image_bytes},
                FeatureTypes=["TABLES", "FORMS"],
            )
        except (BotoCoreError, ClientError) as exc:
            raise ProviderError(self.name.value, f"{type(exc).__name__}: {exc}") from exc
        return self.parse_response(response)

    @staticmethod
    def parse_response(response: Mapping[str, Any]) -> RecognitionResult:
        all_blocks = response.get("Blocks") or []
        by_id = {block.get("Id"): block for block in all_blocks}

        def children(block: Mapping[str, Any], block_type: str) -> list[Mapping[str, Any]]:
            found = []
            for relationship in block.get("Relationships") or []:
                if relationship.get("Type") != "CHILD":
                    continue
                for child_id in relationship.get("Ids") or []:
                    child = by_id.get(child_id)
                    if child and child.get("BlockType") == block_type:
                        found.append(child)
            return found

        lines = []
        for block in all_blocks:
            if block.get("BlockType") != "LINE":
                continue
            box = (block.get("Geometry") or {}).get("BoundingBox") or {}
            lines.append(
                TextBlock(
                    text=block.get("Text", ""),
                    confidence=_clamp(block.get("Confidence", 0.0) / 100.0),
                    bbox=(box["Left"], box["Top"], box["Width"], box["Height"]) if box else None,
                )
            )

        tables = []
        for block in all_blocks:
            if block.get("BlockType") != "TABLE":
                continue
            cells = []
            for cell in children(block, "CELL"):
                words = children(cell, "WORD")
                cells.append(
                    TableCell(
                        text=" ".join(word.get("Text", "") for word in words),
                        row=max(0, int(cell.get("RowIndex", 1)) - 1),
                        col=max(0, int(cell.get("ColumnIndex", 1)) - 1),
                        confidence=_clamp(cell.get("Confidence", 0.0) / 100.0),
                    )
                )
            tables.append(RecognizedTable(cells=tuple(cells)))

        return RecognitionResult(
            text="\n".join(line.text for line in lines),
            confidence=_clamp(mean(line.confidence for line in lines)) if lines else 0.0,
            blocks=tuple(lines),
            tables=tuple(tables),
            provider=ProviderName.CLOUD_B,
        )


class AzureReadProvider(TextRecognitionProvider):
    name = ProviderName.CLOUD_C

    def __init__(self, endpoint: str, key: str, http: Any = None):
        self._endpoint = endpoint.rstrip("/")
        self._key = key
        self._http = http or requests

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        deadline = time.monotonic() + timeout_s
        headers = {"Ocp-Apim-Subscription-Key": self._key}
        try:
            response = self._http.post(
                self._endpoint + AZURE_READ_PATH,
                headers={**headers, "Content-Type": "application/octet-stream"},
                data=image_bytes,
                timeout=timeout_s,
            )
            if response.status_code != 202:
                raise ProviderError(self.name.value, f"HTTP {response.status_code} on submit")

            operation_url = response.headers.get("Operation-Location")
            if not operation_url:
                raise ProviderError(self.name.value, "missing Operation-Location header")

            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProviderError(self.name.value, "result polling exceeded the deadline")
                time.sleep(min(AZURE_POLL_INTERVAL_S, remaining))
                poll = self._http.get(operation_url, headers=headers, timeout=max(remaining, 0.1))
                if poll.status_code >= 400:
                    raise ProviderError(self.name.value, f"HTTP {poll.status_code} on poll")
                body = poll.json()
                status = body.get("status")
                if status == "succeeded":
                    return self.parse_response(body)
                if status == "failed":
                    raise ProviderError(self.name.value, "analysis failed")
        except requests.RequestException as exc:
            raise ProviderError(self.name.value, f"request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(self.name.value, "response was not JSON") from exc

    @staticmethod
    def parse_response(body: Mapping[str, Any]) -> RecognitionResult:
        read_results = (body.get("analyzeResult") or {}).get("readResults") or []
        blocks = []
        word_confidences: list[float] = []
        for page in read_results:
            for line in page.get("lines") or []:
                words = line.get("words") or []
                confidences = [float(w["confidence"]) for w in words if "confidence" in w]
                word_confidences.extend(confidences)
                points = line.get("boundingBox") or []
                blocks.append(
                    TextBlock(
                        text=line.get("text", ""),
                        confidence=_clamp(mean(confidences)) if confidences else 0.0,
                        bbox=_bbox_from_points(points[0::2], points[1::2]),
                    )
                )

        return RecognitionResult(
            text="\n".join(block.text for block in blocks),
            confidence=_clamp(mean(word_confidences)) if word_confidences else 0.0,
            blocks=tuple(blocks),
            provider=ProviderName.CLOUD_C,
        )


def build_providers(
    settings: Settings,
    local_manager: Optional[RecognitionEngineManager] = None,
) -> dict[ProviderName, TextRecognitionProvider]:
    """Instantiate adapters for every provider the settings enable."""
    providers: dict[ProviderName, TextRecognitionProvider] = {}
    if settings.enable_local_engine:
        providers[ProviderName.LOCAL] = LocalTesseractProvider(
            local_manager or shared_local_engine(settings)
        )
    if settings.google_vision_configured:
        providers[ProviderName.CLOUD_A] = GoogleVisionProvider(settings.google_vision_api_key)
    if settings.textract_configured:
        providers[ProviderName.CLOUD_B] = TextractProvider(
            settings.aws_region,
            settings.aws_access_key_id,
            settings.aws_secret_access_key,
        )
    if settings.azure_configured:
        providers[ProviderName.CLOUD_C] = AzureReadProvider(
            settings.azure_vision_endpoint,
            settings.azure_vision_key,
        )
    return providers


# ---------------------------------------------------------------------------
# Result quality & escalation
# ---------------------------------------------------------------------------


def assess_result_quality(result: RecognitionResult, image_quality: ImageQualityProfile) -> float:
    """Score a recognition result in [0, 1] from text shape and confidence."""
    text = result.text or ""
    score = RESULT_BASE_SCORE

    if len(text.strip()) > MIN_MEANINGFUL_TEXT:
        score += 0.2
    score += result.confidence * 0.4
    if re.search(r"\d", text) and re.search(r"[A-Za-z]", text):
        score += 0.1
    if "$" in text:
        score += 0.05
    if re.search(r"total", text, re.IGNORECASE):
        score += 0.05
    score += image_quality.score * 0.1

    return _clamp(round(score, 4))


def quality_label(score: float, settings: Settings) -> str:
    if score >= settings.quality_high_threshold:
        return "high"
    if score >= settings.quality_medium_threshold:
        return "medium"
    return "low"


class RecognitionOutcome:
    """Kept recognition result plus how it was obtained."""

    def __init__(
        self,
        result: RecognitionResult,
        score: float,
        provider: ProviderName,
        fallback_used: bool,
        errors: list[str],
    ):
        self.result = result
        self.score = score
        self.provider = provider
        self.fallback_used = fallback_used
        self.errors = errors


def remaining_seconds(deadline: float) -> float:
    return deadline - time.monotonic()


def call_with_deadline(
    provider: TextRecognitionProvider,
    image_bytes: bytes,
    deadline: float,
) -> RecognitionResult:
    """Run one provider call, abandoning it when the deadline passes."""
    remaining = remaining_seconds(deadline)
    if remaining <= 0:
        raise RecognitionTimeout(
            "Request deadline elapsed before recognition",
            {"provider": provider.name.value},
        )

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ocr-{provider.name.value}")
    try:
        future = executor.submit(provider.recognize, image_bytes, remaining)
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError as exc:
            future.cancel()
            raise RecognitionTimeout(
                f"{provider.name.value} did not respond within the request deadline",
                {"provider": provider.name.value, "timeout_s": round(remaining, 3)},
            ) from exc
    finally:
        executor.shutdown(wait=False)


def _attempt(
    name: ProviderName,
    providers: Mapping[ProviderName, TextRecognitionProvider],
    image_bytes: bytes,
    deadline: float,
    errors: list[str],
) -> Optional[RecognitionResult]:
    provider = providers.get(name)
    if provider is None:
        errors.append(f"{name.value}: provider not configured")
        logger.warning("recognition_attempt | provider=%s | status=not_configured", name.value)
        return None

    started = time.monotonic()
    try:
        result = call_with_deadline(provider, image_bytes, deadline)
    except (ProviderError, EngineUnavailable) as exc:
        errors.append(str(exc))
        logger.warning(
            "recognition_attempt | provider=%s | status=failed | error_type=%s | error=%s",
            name.value,
            type(exc).__name__,
            exc,
        )
        return None
    except RecognitionTimeout:
        raise
    except Exception as exc:
        # Malformed provider payloads surface as KeyError/TypeError inside the adapter.
        errors.append(f"{name.value}: {type(exc).__name__}: {exc}")
        logger.warning(
            "recognition_attempt | provider=%s | status=failed | error_type=%s | error=%s",
            name.value,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        return None

    logger.info(
        "recognition_attempt | provider=%s | status=ok | chars=%s | confidence=%.2f | duration_s=%.2f",
        name.value,
        len(result.text),
        result.confidence,
        time.monotonic() - started,
    )
    return result


def recognize_with_fallback(
    image_bytes: bytes,
    selection: ProviderSelection,
    providers: Mapping[ProviderName, TextRecognitionProvider],
    image_quality: ImageQualityProfile,
    settings: Settings,
    deadline: float,
) -> RecognitionOutcome:
    """Run the primary provider and escalate once to the fallback if needed."""
    errors: list[str] = []

    kept = _attempt(selection.primary, providers, image_bytes, deadline, errors)
    kept_score = assess_result_quality(kept, image_quality) if kept is not None else 0.0
    kept_provider = selection.primary
    fallback_used = False

    if kept is None:
        reason = "primary_failed"
    elif kept.is_empty:
        reason = "empty_text"
    elif kept_score < settings.result_quality_low_threshold:
        reason = "low_quality"
    else:
        reason = None

    if reason and selection.fallback is not None and selection.fallback != selection.primary:
        logger.warning(
            "recognition_escalate | primary=%s | score=%.2f | reason=%s | fallback=%s",
            selection.primary.value,
            kept_score,
            reason,
            selection.fallback.value,
        )
        candidate = _attempt(selection.fallback, providers, image_bytes, deadline, errors)
        if candidate is not None:
            candidate_score = assess_result_quality(candidate, image_quality)
            replace = (
                kept is None
                or candidate_score > kept_score
                or (kept.is_empty and not candidate.is_empty)
            )
            logger.info(
                "recognition_compare | primary_score=%.2f | fallback_score=%.2f | kept=%s",
                kept_score,
                candidate_score,
                "fallback" if replace else "primary",
            )
            if replace:
                kept, kept_score = candidate, candidate_score
                kept_provider = selection.fallback
                fallback_used = True

    if kept is None:
        raise EngineUnavailable(
            "No recognition provider produced a result",
            {"errors": errors, "primary": selection.primary.value},
        )
    if kept.is_empty:
        raise NoTextFound(
            "No text could be recognized in the image",
            {"code": "NO_TEXT_FOUND", "provider": kept_provider.value, "errors": errors},
        )

    return RecognitionOutcome(
        result=kept,
        score=kept_score,
        provider=kept_provider,
        fallback_used=fallback_used,
        errors=errors,
    )
