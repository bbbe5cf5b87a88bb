"""
errors.py - Error kinds raised and recorded by the extraction pipeline.

Fatal kinds abort a run and surface to the caller as exceptions:
    InputError, EngineUnavailable, NoTextFound, Timeout

Non-fatal kinds never block a result. They are attached to
`ExtractionMetadata.flags` as `ExtractionFlag` records:
    LowConfidenceResult, ValidationMismatch
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    INPUT_ERROR = "InputError"
    ENGINE_UNAVAILABLE = "EngineUnavailable"
    NO_TEXT_FOUND = "NoTextFound"
    TIMEOUT = "Timeout"
    LOW_CONFIDENCE_RESULT = "LowConfidenceResult"
    VALIDATION_MISMATCH = "ValidationMismatch"

    @property
    def is_fatal(self) -> bool:
        return self in FATAL_KINDS


FATAL_KINDS = frozenset(
    {
        ErrorKind.INPUT_ERROR,
        ErrorKind.ENGINE_UNAVAILABLE,
        ErrorKind.NO_TEXT_FOUND,
        ErrorKind.TIMEOUT,
    }
)


class ReceiptPipelineError(Exception):
    """Base class for fatal pipeline failures."""

    kind: ErrorKind = ErrorKind.INPUT_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": self.details}


class InputError(ReceiptPipelineError):
    """Missing or unreadable image input."""

    kind = ErrorKind.INPUT_ERROR


class EngineUnavailable(ReceiptPipelineError):
    """No recognition provider could produce a result.

    Raised when the local engine failed to initialize, or when both the
    primary and the fallback provider calls failed.
    """

    kind = ErrorKind.ENGINE_UNAVAILABLE


class NoTextFound(ReceiptPipelineError):
    """Recognized text was empty after the primary and fallback attempts."""

    kind = ErrorKind.NO_TEXT_FOUND


class RecognitionTimeout(ReceiptPipelineError):
    """The request deadline elapsed before a result was produced."""

    kind = ErrorKind.TIMEOUT


class ProviderError(Exception):
    """A single provider call failed.

    Adapter-level only: the recognition stage decides whether to escalate
    to a fallback provider or to raise EngineUnavailable.
    """

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
