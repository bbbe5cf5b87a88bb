"""
test_recognition.py - Recognition adapters, engine lifecycle and escalation.

Covers:
- RecognitionEngineManager: single initialization, cached failure, waiter timeout
- native response parsing for Tesseract, Google Vision, Textract and Azure Read
- result quality scoring and one-step fallback escalation
- deadline enforcement on provider calls

Usage: python test_recognition.py
"""

from __future__ import annotations

import os
import sys
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

import recognition
from conftest import FakeProvider
from errors import EngineUnavailable, NoTextFound, ProviderError, RecognitionTimeout
from line_items import extract_table_items
from models import ImageQualityProfile, ProviderName, ProviderSelection, RecognitionResult
from recognition import (
    AzureReadProvider,
    EngineState,
    GoogleVisionProvider,
    LocalTesseractProvider,
    RecognitionEngineManager,
    TextractProvider,
    assess_result_quality,
    parse_tesseract_data,
    quality_label,
    recognize_with_fallback,
)

IMAGE = b"fake-image-bytes"
QUALITY = ImageQualityProfile(score=0.7)


def _deadline(seconds: float = 5.0) -> float:
    return time.monotonic() + seconds


def _selection(fallback: ProviderName | None = ProviderName.LOCAL) -> ProviderSelection:
    return ProviderSelection(primary=ProviderName.CLOUD_A, fallback=fallback, reason="test")


# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------


def test_engine_manager_initializes_once_across_threads():
    calls = []

    def factory():
        calls.append(1)
        time.sleep(0.1)
        return object()

    manager = RecognitionEngineManager(factory, name="fake")
    assert manager.state is EngineState.UNINITIALIZED

    results = []
    threads = [threading.Thread(target=lambda: results.append(manager.get(timeout=5))) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1
    assert len(results) == 8
    assert all(result is results[0] for result in results)
    assert manager.state is EngineState.READY


def test_engine_manager_caches_failure_without_retry():
    calls = []

    def factory():
        calls.append(1)
        raise RuntimeError("tesseract binary not found")

    manager = RecognitionEngineManager(factory, name="fake")

    with pytest.raises(EngineUnavailable) as first:
        manager.get()
    with pytest.raises(EngineUnavailable) as second:
        manager.get(timeout=1)

    assert len(calls) == 1
    assert manager.state is EngineState.FAILED
    assert "tesseract binary not found" in first.value.message
    assert second.value.details["error_type"] == "RuntimeError"


def test_engine_manager_waiter_times_out_while_initializing():
    release = threading.Event()

    def factory():
        release.wait(5)
        return "engine"

    manager = RecognitionEngineManager(factory, name="slow")

    owner = threading.Thread(target=manager.get)
    owner.start()
    for _ in range(100):
        if manager.state is EngineState.INITIALIZING:
            break
        time.sleep(0.01)

    with pytest.raises(RecognitionTimeout):
        manager.get(timeout=0.05)

    release.set()
    owner.join()
    assert manager.get(timeout=1) == "engine"


def test_local_provider_uses_managed_engine():
    class Engine:
        def recognize(self, image_bytes, timeout_s):
            return RecognitionResult(text="LOCAL TEXT", confidence=0.8, provider=ProviderName.LOCAL)

    provider = LocalTesseractProvider(RecognitionEngineManager(Engine, name="tesseract"))
    result = provider.recognize(IMAGE, 1.0)

    assert result.text == "LOCAL TEXT"
    assert provider.name is ProviderName.LOCAL


# ---------------------------------------------------------------------------
# Native response parsing
# ---------------------------------------------------------------------------


def test_parse_tesseract_data_groups_words_into_lines():
    data = {
        "text": ["", "WALMART", "Milk", "3.99"],
        "conf": ["-1", "95", "90", "80"],
        "block_num": [1, 1, 1, 1],
        "par_num": [1, 1, 1, 1],
        "line_num": [0, 1, 2, 2],
        "left": [0, 10, 10, 60],
        "top": [0, 5, 30, 30],
        "width": [0, 80, 40, 30],
        "height": [0, 20, 18, 18],
    }

    result = parse_tesseract_data(data)

    assert result.text == "WALMART\nMilk 3.99"
    assert result.provider is ProviderName.LOCAL
    assert [block.text for block in result.blocks] == ["WALMART", "Milk 3.99"]
    assert result.blocks[1].bbox == (10, 30, 80, 18)
    assert result.blocks[1].confidence == pytest.approx(0.85)
    assert result.confidence == pytest.approx((0.95 + 0.90 + 0.80) / 3)


def test_parse_tesseract_data_without_words_is_empty():
    result = parse_tesseract_data({"text": [], "conf": []})
    assert result.is_empty
    assert result.confidence == 0.0


def test_google_vision_parse_response():
    annotation = {
        "textAnnotations": [
            {"description": "STORE\nMilk 3.99"},
            {
                "description": "STORE",
                "boundingPoly": {
                    "vertices": [{"x": 10, "y": 10}, {"x": 60, "y": 10}, {"x": 60, "y": 30}, {"x": 10, "y": 30}]
                },
            },
        ],
        "fullTextAnnotation": {
            "text": "STORE\nMilk 3.99\n",
            "pages": [{"blocks": [{"confidence": 0.9}, {"confidence": 0.7}]}],
        },
    }

    result = GoogleVisionProvider.parse_response(annotation)

    assert result.text == "STORE\nMilk 3.99"
    assert result.confidence == pytest.approx(0.8)
    assert result.blocks[0].bbox == (10, 10, 50, 20)
    assert result.provider is ProviderName.CLOUD_A
    assert GoogleVisionProvider.parse_response({}).is_empty


def test_google_vision_http_error_is_provider_error():
    class Response:
        status_code = 500

    class Http:
        def post(self, *args, **kwargs):
            return Response()

    with pytest.raises(ProviderError):
        GoogleVisionProvider("key", http=Http()).recognize(IMAGE, 1.0)


def test_google_vision_requests_text_detection():
    class Response:
        status_code = 200

        def json(self):
            return {"responses": [{"textAnnotations": [{"description": "STORE"}]}]}

    class Http:
        def post(self, url, **kwargs):
            self.url = url
            self.kwargs = kwargs
            return Response()

    http = Http()
    result = GoogleVisionProvider("secret", http=http).recognize(IMAGE, 1.0)

    request = http.kwargs["json"]["requests"][0]
    assert request["features"] == [{"type": "TEXT_DETECTION"}]
    assert http.kwargs["params"] == {"key": "secret"}
    assert result.text == "STORE"


TEXTRACT_RESPONSE = {
    "Blocks": [
        {
            "Id": "l1",
            "BlockType": "LINE",
            "Text": "COFFEE SHOP",
            "Confidence": 99.0,
            "Geometry": {"BoundingBox": {"Left": 0.1, "Top": 0.05, "Width": 0.5, "Height": 0.03}},
        },
        {
            "Id": "l2",
            "BlockType": "LINE",
            "Text": "Latte 4.50",
            "Confidence": 95.0,
            "Geometry": {"BoundingBox": {"Left": 0.1, "Top": 0.1, "Width": 0.6, "Height": 0.03}},
        },
        {"Id": "t1", "BlockType": "TABLE", "Relationships": [{"Type": "CHILD", "Ids": ["c1", "c2"]}]},
        {
            "Id": "c1",
            "BlockType": "CELL",
            "RowIndex": 1,
            "ColumnIndex": 1,
            "Confidence": 90.0,
            "Relationships": [{"Type": "CHILD", "Ids": ["w1"]}],
        },
        {
            "Id": "c2",
            "BlockType": "CELL",
            "RowIndex": 1,
            "ColumnIndex": 2,
            "Confidence": 90.0,
            "Relationships": [{"Type": "CHILD", "Ids": ["w2"]}],
        },
        {"Id": "w1", "BlockType": "WORD", "Text": "Latte"},
        {"Id": "w2", "BlockType": "WORD", "Text": "4.50"},
    ]
}


def test_textract_parse_response_reads_lines_and_tables(settings):
    result = TextractProvider.parse_response(TEXTRACT_RESPONSE)

    assert result.text == "COFFEE SHOP\nLatte 4.50"
    assert result.confidence == pytest.approx(0.97)
    assert result.blocks[0].bbox == (0.1, 0.05, 0.5, 0.03)
    assert len(result.tables) == 1
    assert [[cell.text for cell in row] for row in result.tables[0].rows()] == [["Latte", "4.50"]]

    items = extract_table_items(result, settings)
    assert [(item.name, item.total_price) for item in items] == [("Latte", 4.5)]


def test_textract_client_errors_become_provider_errors():
    from botocore.exceptions import ClientError

    class Client:
        def analyze_document(self, **kwargs):
            raise ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "AnalyzeDocument")

    with pytest.raises(ProviderError) as error:
        TextractProvider("us-east-1", client=Client()).recognize(IMAGE, 1.0)
    assert error.value.provider == ProviderName.CLOUD_B.value


AZURE_BODY = {
    "status": "succeeded",
    "analyzeResult": {
        "readResults": [
            {
                "lines": [
                    {
                        "text": "Total 12.00",
                        "boundingBox": [1, 2, 11, 2, 11, 8, 1, 8],
                        "words": [{"text": "Total", "confidence": 0.9}, {"text": "12.00", "confidence": 0.7}],
                    }
                ]
            }
        ]
    },
}


def test_azure_parse_response():
    result = AzureReadProvider.parse_response(AZURE_BODY)

    assert result.text == "Total 12.00"
    assert result.confidence == pytest.approx(0.8)
    assert result.blocks[0].bbox == (1, 2, 10, 6)
    assert result.provider is ProviderName.CLOUD_C


class _AzureSubmitted:
    status_code = 202
    headers = {"Operation-Location": "https://azure.invalid/operations/1"}


class _AzurePoll:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code

    def json(self):
        return self._body


class _AzureHttp:
    def __init__(self, *polls):
        self.polls = list(polls)
        self.gets = 0

    def post(self, url, **kwargs):
        assert url == "https://azure.invalid/vision/v3.2/read/analyze"
        return _AzureSubmitted()

    def get(self, url, **kwargs):
        self.gets += 1
        return self.polls.pop(0)


def test_azure_submit_then_poll(monkeypatch):
    monkeypatch.setattr(recognition, "AZURE_POLL_INTERVAL_S", 0.01)
    http = _AzureHttp(_AzurePoll({"status": "running"}), _AzurePoll(AZURE_BODY))

    result = AzureReadProvider("https://azure.invalid/", "key", http=http).recognize(IMAGE, 2.0)
    assert result.text == "Total 12.00"
    assert http.gets == 2


def test_azure_poll_http_error_is_provider_error(monkeypatch):
    monkeypatch.setattr(recognition, "AZURE_POLL_INTERVAL_S", 0.01)
    throttled = _AzurePoll({"error": {"code": "429", "message": "Rate limit exceeded"}}, status_code=429)
    http = _AzureHttp(throttled, _AzurePoll(AZURE_BODY))

    started = time.monotonic()
    with pytest.raises(ProviderError, match="HTTP 429 on poll"):
        AzureReadProvider("https://azure.invalid/", "key", http=http).recognize(IMAGE, 5.0)

    assert http.gets == 1
    assert time.monotonic() - started < 1.0


# ---------------------------------------------------------------------------
# Result quality & escalation
# ---------------------------------------------------------------------------


def test_assess_result_quality_components(settings):
    rich = RecognitionResult(
        text="STORE\nMilk 3.99\nTOTAL $3.99",
        confidence=0.9,
        provider=ProviderName.LOCAL,
    )
    empty = RecognitionResult(text="", confidence=0.0, provider=ProviderName.LOCAL)

    assert assess_result_quality(rich, QUALITY) == 1.0
    assert assess_result_quality(empty, QUALITY) == pytest.approx(0.3 + 0.07)
    assert quality_label(0.9, settings) == "high"
    assert quality_label(0.7, settings) == "medium"
    assert quality_label(0.2, settings) == "low"


def test_good_primary_result_is_kept_without_escalation(settings):
    primary = FakeProvider(ProviderName.CLOUD_A, text="STORE\nMilk 3.99\nTOTAL $3.99")
    fallback = FakeProvider(ProviderName.LOCAL, text="unused")

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: primary, ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert outcome.provider is ProviderName.CLOUD_A
    assert not outcome.fallback_used
    assert fallback.calls == 0


def test_low_quality_primary_escalates_once_and_keeps_better_result(settings):
    # Primary scores 0.3 + 0.075*0.4 + 0.07 = 0.40, below the 0.45 threshold.
    primary = FakeProvider(ProviderName.CLOUD_A, text="abc", confidence=0.075)
    # Fallback scores 0.3 + 0.08 + 0.1 + 0.07 = 0.55.
    fallback = FakeProvider(ProviderName.LOCAL, text="Milk 3.99", confidence=0.2)

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: primary, ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert primary.calls == 1
    assert fallback.calls == 1
    assert outcome.fallback_used
    assert outcome.provider is ProviderName.LOCAL
    assert outcome.result.text == "Milk 3.99"
    assert outcome.score == pytest.approx(0.55)


def test_worse_fallback_result_keeps_primary(settings):
    primary = FakeProvider(ProviderName.CLOUD_A, text="abc", confidence=0.075)
    fallback = FakeProvider(ProviderName.LOCAL, text="xy", confidence=0.0)

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: primary, ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert fallback.calls == 1
    assert not outcome.fallback_used
    assert outcome.result.text == "abc"


def test_failed_primary_escalates_to_fallback(settings):
    primary = FakeProvider(ProviderName.CLOUD_A, error="HTTP 503")
    fallback = FakeProvider(ProviderName.LOCAL, text="STORE\nTOTAL 5.00")

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: primary, ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert outcome.fallback_used
    assert outcome.errors == ["google_vision: HTTP 503"]


def test_unexpected_adapter_exception_escalates_to_fallback(settings):
    class MalformedPayloadProvider:
        name = ProviderName.CLOUD_A

        def recognize(self, image_bytes, timeout_s):
            # Bounding box missing from an otherwise successful response.
            raise KeyError("Left")

    fallback = FakeProvider(ProviderName.LOCAL, text="STORE\nTOTAL 5.00")

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: MalformedPayloadProvider(), ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert outcome.fallback_used
    assert outcome.provider is ProviderName.LOCAL
    assert outcome.result.text == "STORE\nTOTAL 5.00"
    assert outcome.errors == ["google_vision: KeyError: 'Left'"]
    assert fallback.calls == 1


def test_failed_fallback_keeps_usable_primary_and_records_error(settings):
    primary = FakeProvider(ProviderName.CLOUD_A, text="abc", confidence=0.075)
    fallback = FakeProvider(ProviderName.LOCAL, error="engine crashed")

    outcome = recognize_with_fallback(
        IMAGE,
        _selection(),
        {ProviderName.CLOUD_A: primary, ProviderName.LOCAL: fallback},
        QUALITY,
        settings,
        _deadline(),
    )

    assert outcome.provider is ProviderName.CLOUD_A
    assert not outcome.fallback_used
    assert len(outcome.errors) == 1
    assert "engine crashed" in outcome.errors[0]


def test_both_providers_failing_raises_engine_unavailable(settings):
    providers = {
        ProviderName.CLOUD_A: FakeProvider(ProviderName.CLOUD_A, error="HTTP 500"),
        ProviderName.LOCAL: FakeProvider(ProviderName.LOCAL, error="not installed"),
    }

    with pytest.raises(EngineUnavailable) as error:
        recognize_with_fallback(IMAGE, _selection(), providers, QUALITY, settings, _deadline())
    assert len(error.value.details["errors"]) == 2


def test_empty_text_after_fallback_raises_no_text_found(settings):
    providers = {
        ProviderName.CLOUD_A: FakeProvider(ProviderName.CLOUD_A, text=""),
        ProviderName.LOCAL: FakeProvider(ProviderName.LOCAL, text="   "),
    }

    with pytest.raises(NoTextFound):
        recognize_with_fallback(IMAGE, _selection(), providers, QUALITY, settings, _deadline())


def test_no_fallback_means_single_attempt(settings):
    primary = FakeProvider(ProviderName.CLOUD_A, error="HTTP 500")

    with pytest.raises(EngineUnavailable):
        recognize_with_fallback(
            IMAGE,
            _selection(fallback=None),
            {ProviderName.CLOUD_A: primary},
            QUALITY,
            settings,
            _deadline(),
        )
    assert primary.calls == 1


def test_slow_provider_exceeds_deadline(settings):
    slow = FakeProvider(ProviderName.CLOUD_A, text="late", delay_s=1.0)

    started = time.monotonic()
    with pytest.raises(RecognitionTimeout):
        recognize_with_fallback(
            IMAGE,
            _selection(fallback=None),
            {ProviderName.CLOUD_A: slow},
            QUALITY,
            settings,
            _deadline(0.1),
        )
    assert time.monotonic() - started < 0.9


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-q"]))
