"""
config.py - Runtime settings for the extraction engine.

All tunables live on `Settings` as named fields so tests and deployments
can override them without touching module code. `load_settings()` reads a
`.env` file (python-dotenv) and then the process environment.

Environment variables:
    RECEIPT_<FIELD_NAME>        any tunable below, e.g. RECEIPT_MAX_ITEM_PRICE
    GOOGLE_VISION_API_KEY       enables the Google Vision provider
    AWS_ACCESS_KEY_ID           with AWS_SECRET_ACCESS_KEY enables Textract
    AWS_SECRET_ACCESS_KEY
    AWS_REGION                  defaults to us-east-1
    AZURE_VISION_ENDPOINT       with AZURE_VISION_KEY enables Azure Read
    AZURE_VISION_KEY
    TESSERACT_CMD               path to the tesseract binary
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logging_config import get_logger, mask_secret

logger = get_logger(__name__)

ENV_PREFIX = "RECEIPT_"

PROVIDER_ENV_VARS: dict[str, str] = {
    "google_vision_api_key": "GOOGLE_VISION_API_KEY",
    "aws_access_key_id": "AWS_ACCESS_KEY_ID",
    "aws_secret_access_key": "AWS_SECRET_ACCESS_KEY",
    "aws_region": "AWS_REGION",
    "azure_vision_endpoint": "AZURE_VISION_ENDPOINT",
    "azure_vision_key": "AZURE_VISION_KEY",
    "tesseract_cmd": "TESSERACT_CMD",
}


class Settings(BaseModel):
    """Every threshold the pipeline consults, with production defaults."""

    model_config = ConfigDict(frozen=True)

    # -- Provider selection --

    quality_high_threshold: float = Field(default=0.85, ge=0, le=1)
    # Image quality at or above this is "high": speed may be preferred.

    quality_medium_threshold: float = Field(default=0.65, ge=0, le=1)
    # Between medium and high the most accurate affordable provider is used.

    fast_timeout_ms: int = Field(default=10000, gt=0)
    # A request timeout below this counts as a speed preference.

    # -- Recognition escalation --

    result_quality_low_threshold: float = Field(default=0.45, ge=0, le=1)
    # Assessed result quality below this triggers one fallback attempt.

    # -- Line items & fusion --

    max_item_price: float = Field(default=10000.0, gt=0)
    # Line items priced at or above this are treated as misreads.

    name_similarity_threshold: float = Field(default=80.0, ge=0, le=100)
    # Names at or above this similarity (0-100) may describe the same thing.
    # "milk 2 percent" vs "milk 2%" normalizes to 100.
    # "bananas" vs "banana chips" scores 74 and stays distinct.

    price_tolerance_pct: float = Field(default=0.05, ge=0)
    # Two prices within 5% of their mean count as the same price.

    strategy_workers: int = Field(default=5, ge=1)

    # -- Validation & scoring --

    validation_tolerance_pct: float = Field(default=0.10, ge=0)
    # Item sum may differ from the declared total by this share before
    # a ValidationMismatch flag is attached.

    low_confidence_threshold: float = Field(default=0.5, ge=0, le=1)
    # Final confidence below this attaches a LowConfidenceResult flag.

    # -- Warranty --

    max_warranty_years: int = Field(default=10, ge=0)
    max_warranty_months: int = Field(default=120, ge=0)
    max_warranty_days: int = Field(default=3650, ge=0)
    # Detected periods beyond any of these caps are dropped as misreads.

    high_value_threshold: float = Field(default=500.0, ge=0)
    # Receipts above this total get an extended-warranty hint.

    expiring_soon_days: int = Field(default=90, ge=0)

    # -- Provider credentials --

    google_vision_api_key: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"
    azure_vision_endpoint: Optional[str] = None
    azure_vision_key: Optional[str] = None
    tesseract_cmd: Optional[str] = None
    tesseract_lang: str = "eng"
    enable_local_engine: bool = True

    @property
    def google_vision_configured(self) -> bool:
        return bool(self.google_vision_api_key)

    @property
    def textract_configured(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key)

    @property
    def azure_configured(self) -> bool:
        return bool(self.azure_vision_endpoint and self.azure_vision_key)


def _load_dotenv() -> None:
    try:
        load_dotenv()
    except UnicodeDecodeError:
        # Fallback for legacy Windows-encoded .env files.
        load_dotenv(encoding="cp1252")


def load_settings(environ: Optional[dict[str, str]] = None) -> Settings:
    """Build Settings from .env plus environment variables.

    Unparseable values are logged and left at their defaults so a single
    bad variable never prevents the engine from starting.
    """
    if environ is None:
        _load_dotenv()
        environ = dict(os.environ)

    overrides: dict[str, str] = {}
    for field_name in Settings.model_fields:
        env_name = PROVIDER_ENV_VARS.get(field_name, ENV_PREFIX + field_name.upper())
        raw = environ.get(env_name)
        if raw is not None and raw.strip():
            overrides[field_name] = raw.strip()

    accepted: dict[str, str] = {}
    for field_name, raw in overrides.items():
        try:
            Settings.model_validate({field_name: raw})
        except ValidationError as exc:
            logger.warning(
                "settings_invalid_value | field=%s | error=%s | fallback=default",
                field_name,
                exc.errors()[0].get("msg", "invalid"),
            )
            continue
        accepted[field_name] = raw

    settings = Settings(**accepted)

    logger.debug(
        "settings_loaded | overrides=%s | google=%s | aws_key=%s | azure=%s",
        sorted(overrides),
        mask_secret(settings.google_vision_api_key),
        mask_secret(settings.aws_access_key_id),
        mask_secret(settings.azure_vision_key),
    )
    return settings
