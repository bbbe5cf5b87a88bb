"""
conftest.py - Shared fixtures and fakes for the extraction engine tests.

Fakes stand in for OCR engines so tests never need a Tesseract binary or
cloud credentials; images are generated with Pillow.
"""

from __future__ import annotations

import io
import os
import sys
import threading
import time
from datetime import date
from typing import Optional

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
from PIL import Image

from config import Settings
from errors import ProviderError
from models import ProviderDescriptor, ProviderName, RecognitionResult, TextBlock
from providers import PROVIDER_CATALOG, ProviderRegistry
from recognition import TextRecognitionProvider

FIXED_TODAY = date(2024, 6, 1)


class FakeProvider(TextRecognitionProvider):
    """Scripted OCR engine: returns fixed text, raises, or stalls."""

    def __init__(
        self,
        name: ProviderName,
        text: str = "",
        confidence: float = 0.9,
        blocks: tuple[TextBlock, ...] = (),
        error: Optional[str] = None,
        delay_s: float = 0.0,
    ):
        self.name = name
        self.text = text
        self.confidence = confidence
        self.blocks = blocks
        self.error = error
        self.delay_s = delay_s
        self.calls = 0
        self._lock = threading.Lock()

    def recognize(self, image_bytes: bytes, timeout_s: float) -> RecognitionResult:
        with self._lock:
            self.calls += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error:
            raise ProviderError(self.name.value, self.error)
        return RecognitionResult(
            text=self.text,
            confidence=self.confidence,
            blocks=self.blocks,
            provider=self.name,
        )


def make_registry(*names: ProviderName) -> ProviderRegistry:
    """Registry with the catalog's costs where only `names` are available."""
    return ProviderRegistry(
        ProviderDescriptor(
            name=name,
            cost_per_call=cost,
            speed_tier=speed,
            accuracy_tier=accuracy,
            available=name in names,
        )
        for name, (cost, speed, accuracy) in PROVIDER_CATALOG.items()
    )


def make_image(
    width: int = 100,
    height: int = 100,
    color: int = 128,
    image_format: str = "PNG",
    split: bool = False,
) -> bytes:
    """Encode a grayscale test image. `split` paints the left half black and the right half white."""
    image = Image.new("L", (width, height), color=color)
    if split:
        image.paste(0, (0, 0, width // 2, height))
        image.paste(255, (width // 2, 0, width, height))
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image()


@pytest.fixture
def today() -> date:
    return FIXED_TODAY

