"""
models.py - Data models for the receipt & warranty extraction pipeline.

Every stage communicates exclusively through these models:

    image_quality.py  ->  ImageQualityProfile
    providers.py      ->  ProviderDescriptor, ProviderSelection
    recognition.py    ->  RecognitionResult
    line_items.py     ->  list[LineItemCandidate]
    fields.py         ->  list[CandidateField]
    warranty.py       ->  list[WarrantyCandidate]
    pipeline.py       ->  ExtractionResult

Design principles:
1. Recognition output is frozen so strategies can read it concurrently.
2. Every candidate names the strategy that produced it and the text it
   was read from, so a final value can be traced back to the receipt.
3. Confidences are always in [0, 1]; the models reject anything else.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from errors import ErrorKind

T = TypeVar("T")


class QualityHint(str, Enum):
    AUTO = "auto"
    FAST = "fast"
    ACCURATE = "accurate"


class ProviderName(str, Enum):
    """Recognition engines the selector can dispatch to."""

    LOCAL = "tesseract"
    CLOUD_A = "google_vision"
    CLOUD_B = "aws_textract"
    CLOUD_C = "azure_read"


class SpeedTier(str, Enum):
    SLOW = "slow"
    MEDIUM = "medium"
    FAST = "fast"


class AccuracyTier(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


class RecognitionRequest(BaseModel):
    """One receipt image to process.

    Exactly one of `image_bytes` / `image_ref` is normally given. When both
    are present the bytes win and the reference is only used for logging.
    """

    model_config = ConfigDict(frozen=True)

    image_bytes: Optional[bytes] = Field(
        default=None,
        description="Raw encoded image (PNG, JPEG, TIFF, ...).",
    )
    image_ref: Optional[str] = Field(
        default=None,
        description="Key of a previously stored image, resolved through an ImageStore.",
    )
    quality_hint: QualityHint = Field(
        default=QualityHint.AUTO,
        description="Caller preference: 'fast' favours latency over accuracy.",
    )
    budget_limit: Optional[float] = Field(
        default=None,
        ge=0,
        description=(
            "Maximum cost per recognition call. None means unbounded, "
            "0 forces the free local engine."
        ),
    )
    timeout_ms: int = Field(
        default=30000,
        gt=0,
        description="Deadline for the whole pipeline run, in milliseconds.",
    )


class ImageQualityProfile(BaseModel):
    """Pixel statistics and a 0-1 quality score for one image."""

    score: float = Field(..., ge=0.0, le=1.0)
    resolution: int = Field(default=0, ge=0, description="width * height in pixels")
    brightness: float = Field(default=128.0, description="Grayscale mean, 0-255")
    contrast: float = Field(default=30.0, description="Grayscale standard deviation")
    aspect_ratio: float = Field(default=1.0, description="width / height")
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    recommendations: list[str] = Field(default_factory=list)


class ProviderDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: ProviderName
    cost_per_call: float = Field(..., ge=0)
    speed_tier: SpeedTier
    accuracy_tier: AccuracyTier
    available: bool = False


class ProviderSelection(BaseModel):
    """Outcome of provider selection for one request."""

    model_config = ConfigDict(frozen=True)

    primary: ProviderName
    fallback: Optional[ProviderName] = None
    reason: str
    cost: float = 0.0
    accuracy: AccuracyTier = AccuracyTier.MEDIUM


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    bbox: Optional[tuple[float, float, float, float]] = Field(
        default=None,
        description="(left, top, width, height) in provider units",
    )
    block_type: str = "line"

    @property
    def center_y(self) -> Optional[float]:
        if self.bbox is None:
            return None
        return self.bbox[1] + self.bbox[3] / 2.0


class TableCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class RecognizedTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    cells: tuple[TableCell, ...] = ()

    def rows(self) -> list[list[TableCell]]:
        """Cells grouped by row index, each row ordered by column."""
        grouped: dict[int, list[TableCell]] = {}
        for cell in self.cells:
            grouped.setdefault(cell.row, []).append(cell)
        return [sorted(grouped[row], key=lambda c: c.col) for row in sorted(grouped)]


class RecognitionResult(BaseModel):
    """Immutable snapshot of one provider's output.

    Extraction strategies only ever read this object; nothing downstream
    mutates it, so it is shared across worker threads without copying.
    """

    model_config = ConfigDict(frozen=True)

    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    blocks: tuple[TextBlock, ...] = ()
    tables: tuple[RecognizedTable, ...] = ()
    provider: ProviderName

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    @property
    def lines(self) -> list[str]:
        return [line.strip() for line in self.text.splitlines() if line.strip()]


class CandidateField(BaseModel, Generic[T]):
    """One strategy's opinion about a scalar field (merchant, total, date)."""

    model_config = ConfigDict(frozen=True)

    value: T
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_strategy: str
    provenance_text: str = ""


class LineItemCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100)
    quantity: float = Field(default=1.0, gt=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    total_price: float = Field(..., gt=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_strategy: str
    provenance_text: str = ""
    category: Optional[str] = None
    taxable: Optional[bool] = None
    department_code: Optional[str] = None


class WarrantyPeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    years: int = Field(default=0, ge=0)
    months: int = Field(default=0, ge=0)
    days: int = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return self.years == 0 and self.months == 0 and self.days == 0

    def exceeds(self, max_years: int, max_months: int, max_days: int) -> bool:
        return self.years > max_years or self.months > max_months or self.days > max_days

    def describe(self) -> str:
        parts = []
        for amount, unit in ((self.years, "year"), (self.months, "month"), (self.days, "day")):
            if amount:
                parts.append(f"{amount} {unit}{'s' if amount != 1 else ''}")
        return " ".join(parts) or "unspecified"


class WarrantyCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_name: Optional[str] = None
    warranty_period: Optional[WarrantyPeriod] = None
    warranty_type: Optional[str] = Field(
        default=None,
        description=(
            "manufacturer, extended, limited, return_policy, exchange_policy, "
            "protection_plan, parts, geek_squad, satisfaction_guarantee, "
            "extended_available or general"
        ),
    )
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_strategy: str
    expiration_date: Optional[date] = None
    category: Optional[str] = None
    coverage: Optional[str] = None
    manufacturer: Optional[str] = None
    product_model: Optional[str] = None
    serial_number: Optional[str] = None
    merchant_name: Optional[str] = None
    notes: Optional[str] = None
    provenance_text: str = ""


class ExtractionFlag(BaseModel):
    """Non-fatal finding attached to a result."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _non_fatal_only(self) -> "ExtractionFlag":
        if self.kind.is_fatal:
            raise ValueError(f"{self.kind.value} is fatal and cannot be a flag")
        return self


class ExtractionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    selection_reason: str = ""
    fallback_used: bool = False
    recognition_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    result_quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    result_quality_label: str = "low"
    image_quality: Optional[ImageQualityProfile] = None
    flags: list[ExtractionFlag] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    provider_errors: list[str] = Field(default_factory=list)
    strategy_errors: list[str] = Field(default_factory=list)
    strategy_counts: dict[str, int] = Field(default_factory=dict)
    field_sources: dict[str, str] = Field(default_factory=dict)
    image_sha256: Optional[str] = None
    image_ref: Optional[str] = None
    processing_ms: float = 0.0
    processed_at: Optional[datetime] = None
    reprocessed: bool = False
    raw_text: str = ""


class ExtractionResult(BaseModel):
    """Final structured record for one receipt.

    Immutable: reprocessing produces a new result rather than editing this one.
    """

    model_config = ConfigDict(frozen=True)

    merchant_name: str
    total_amount: float = Field(..., ge=0)
    purchase_date: Optional[date] = None
    items: list[LineItemCandidate] = Field(default_factory=list)
    warranties: list[WarrantyCandidate] = Field(default_factory=list)
    category: str = "Other"
    confidence: float = Field(..., ge=0.0, le=1.0)
    metadata: ExtractionMetadata

    @property
    def item_total(self) -> float:
        return round(sum(item.total_price for item in self.items), 2)

    @property
    def has_flags(self) -> bool:
        return bool(self.metadata.flags)

    def flag_kinds(self) -> set[ErrorKind]:
        return {flag.kind for flag in self.metadata.flags}
