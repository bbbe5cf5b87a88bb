"""
image_quality.py - Pixel-level quality assessment of receipt photos.

The score drives provider selection: clean, well-lit, high-resolution
photos can go to a fast engine, while poor photos are routed to the most
accurate engine the budget allows.

Scoring (starts at 0.5, clamped to [0, 1]):
    resolution  > 2 MP          +0.20
                0.5 - 2 MP      +0.10
                < 0.5 MP        -0.10
    brightness  80 - 180        +0.15
                < 50 or > 220   -0.15
    contrast    > 40            +0.10
                < 20            -0.10
    aspect      0.6-0.8 / 1.2-1.7   +0.05  (typical receipt/document framing)
"""

from __future__ import annotations

import io
import logging

from PIL import Image, ImageStat

from errors import InputError
from logging_config import get_logger, graceful
from models import ImageQualityProfile

logger = get_logger(__name__)

HIGH_RESOLUTION_PIXELS = 2_000_000
MEDIUM_RESOLUTION_PIXELS = 500_000

GOOD_BRIGHTNESS = (80.0, 180.0)
EXTREME_DARK = 50.0
EXTREME_BRIGHT = 220.0

GOOD_CONTRAST = 40.0
LOW_CONTRAST = 20.0

DOCUMENT_ASPECTS = ((0.6, 0.8), (1.2, 1.7))

ANALYSIS_FAILED = "Unable to analyze image quality"
QUALITY_GOOD = "Image quality appears good"


def ensure_image_present(image_bytes: bytes | None) -> None:
    """Raise InputError when no image bytes were supplied.

    Decodability is not checked: formats Pillow cannot open (PDF, HEIC) may
    still be readable by a cloud engine, and quality analysis falls back to
    the neutral profile for them.
    """
    if not image_bytes:
        raise InputError("No image provided", {"code": "MISSING_IMAGE"})


def default_quality_profile() -> ImageQualityProfile:
    """Neutral profile used when an image cannot be analyzed."""
    return ImageQualityProfile(
        score=0.5,
        resolution=0,
        brightness=128.0,
        contrast=30.0,
        aspect_ratio=1.0,
        recommendations=[ANALYSIS_FAILED],
    )


def score_image(
    width: int,
    height: int,
    brightness: float,
    contrast: float,
) -> float:
    resolution = width * height
    aspect_ratio = width / height if height else 1.0
    score = 0.5

    if resolution > HIGH_RESOLUTION_PIXELS:
        score += 0.2
    elif resolution > MEDIUM_RESOLUTION_PIXELS:
        score += 0.1
    else:
        score -= 0.1

    if GOOD_BRIGHTNESS[0] <= brightness <= GOOD_BRIGHTNESS[1]:
        score += 0.15
    elif brightness < EXTREME_DARK or brightness > EXTREME_BRIGHT:
        score -= 0.15

    if contrast > GOOD_CONTRAST:
        score += 0.1
    elif contrast < LOW_CONTRAST:
        score -= 0.1

    if any(low <= aspect_ratio <= high for low, high in DOCUMENT_ASPECTS):
        score += 0.05

    return max(0.0, min(1.0, round(score, 4)))


def quality_recommendations(resolution: int, brightness: float, contrast: float) -> list[str]:
    recommendations: list[str] = []
    if brightness < GOOD_BRIGHTNESS[0]:
        recommendations.append("Image appears too dark - try better lighting")
    elif brightness > GOOD_BRIGHTNESS[1]:
        recommendations.append("Image appears too bright - reduce lighting or avoid glare")

    if contrast < LOW_CONTRAST:
        recommendations.append("Low contrast detected - ensure clear text visibility")

    if resolution < MEDIUM_RESOLUTION_PIXELS:
        recommendations.append("Low resolution image - try capturing at higher resolution")

    return recommendations or [QUALITY_GOOD]


@graceful(default_quality_profile, log_level=logging.WARNING)
def assess_image_quality(image_bytes: bytes) -> ImageQualityProfile:
    """Measure brightness, contrast, resolution and framing of an image.

    Never raises: an undecodable image yields `default_quality_profile()`,
    whose recommendation records that analysis failed.
    """
    with Image.open(io.BytesIO(image_bytes)) as image:
        image_format = image.format
        width, height = image.size
        stats = ImageStat.Stat(image.convert("L"))

    brightness = float(stats.mean[0])
    contrast = float(stats.stddev[0])
    resolution = width * height

    profile = ImageQualityProfile(
        score=score_image(width, height, brightness, contrast),
        resolution=resolution,
        brightness=round(brightness, 2),
        contrast=round(contrast, 2),
        aspect_ratio=round(width / height, 4) if height else 1.0,
        width=width,
        height=height,
        format=image_format,
        recommendations=quality_recommendations(resolution, brightness, contrast),
    )
    logger.info(
        "image_quality | size=%sx%s | brightness=%.1f | contrast=%.1f | score=%.2f",
        width,
        height,
        brightness,
        contrast,
        profile.score,
    )
    return profile
