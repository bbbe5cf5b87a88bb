"""
providers.py - Provider catalog and cost/speed/accuracy-aware selection.

The registry is built once at startup from Settings and is read-only
afterwards. Selection is a pure function of (image quality, request,
registry, settings) and always names providers by `ProviderName`.

Selection policy:
    1. only one provider available        -> that provider, no fallback
    2. budget_limit == 0                  -> local engine, no fallback
    3. quality >= high threshold:
         'fast' hint or short timeout     -> fastest affordable, fallback local
         otherwise                        -> most accurate affordable, fallback local
    4. any lower quality                  -> most accurate affordable, fallback local
    nothing affordable                    -> local engine, reason recorded
"""

from __future__ import annotations

from typing import Iterable, Optional

from config import Settings
from logging_config import get_logger
from models import (
    AccuracyTier,
    ImageQualityProfile,
    ProviderDescriptor,
    ProviderName,
    ProviderSelection,
    QualityHint,
    RecognitionRequest,
    SpeedTier,
)

logger = get_logger(__name__)

# Static catalog. Availability is filled in from credentials at startup.
PROVIDER_CATALOG: dict[ProviderName, tuple[float, SpeedTier, AccuracyTier]] = {
    ProviderName.LOCAL: (0.0, SpeedTier.SLOW, AccuracyTier.MEDIUM),
    ProviderName.CLOUD_A: (0.0015, SpeedTier.FAST, AccuracyTier.HIGH),
    ProviderName.CLOUD_B: (0.0015, SpeedTier.FAST, AccuracyTier.HIGH),
    ProviderName.CLOUD_C: (0.001, SpeedTier.MEDIUM, AccuracyTier.HIGH),
}

# Fixed priority orders. Both tiers currently rank the cloud engines the
# same way; they are kept separate so either can be retuned independently.
SPEED_PRIORITY: tuple[ProviderName, ...] = (
    ProviderName.CLOUD_A,
    ProviderName.CLOUD_B,
    ProviderName.CLOUD_C,
    ProviderName.LOCAL,
)
ACCURACY_PRIORITY: tuple[ProviderName, ...] = (
    ProviderName.CLOUD_A,
    ProviderName.CLOUD_B,
    ProviderName.CLOUD_C,
    ProviderName.LOCAL,
)

BUDGET_REASON = "Budget constraints - using free provider"


class ProviderRegistry:
    """Read-only view over the provider descriptors of this process."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]):
        self._descriptors: dict[ProviderName, ProviderDescriptor] = {
            descriptor.name: descriptor for descriptor in descriptors
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        availability = {
            ProviderName.LOCAL: settings.enable_local_engine,
            ProviderName.CLOUD_A: settings.google_vision_configured,
            ProviderName.CLOUD_B: settings.textract_configured,
            ProviderName.CLOUD_C: settings.azure_configured,
        }
        registry = cls(
            ProviderDescriptor(
                name=name,
                cost_per_call=cost,
                speed_tier=speed,
                accuracy_tier=accuracy,
                available=availability[name],
            )
            for name, (cost, speed, accuracy) in PROVIDER_CATALOG.items()
        )
        logger.info(
            "provider_registry | available=%s",
            [descriptor.name.value for descriptor in registry.available()],
        )
        return registry

    def get(self, name: ProviderName) -> Optional[ProviderDescriptor]:
        return self._descriptors.get(name)

    def available(self) -> list[ProviderDescriptor]:
        return [d for d in self._descriptors.values() if d.available]

    def is_available(self, name: ProviderName) -> bool:
        descriptor = self._descriptors.get(name)
        return bool(descriptor and descriptor.available)

    def __iter__(self):
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)


def _within_budget(descriptor: ProviderDescriptor, budget_limit: Optional[float]) -> bool:
    return budget_limit is None or descriptor.cost_per_call <= budget_limit


def _first_affordable(
    registry: ProviderRegistry,
    priority: tuple[ProviderName, ...],
    budget_limit: Optional[float],
) -> Optional[ProviderDescriptor]:
    for name in priority:
        descriptor = registry.get(name)
        if descriptor and descriptor.available and _within_budget(descriptor, budget_limit):
            return descriptor
    return None


def _selection(
    registry: ProviderRegistry,
    primary: ProviderDescriptor,
    reason: str,
    with_local_fallback: bool,
) -> ProviderSelection:
    fallback = None
    if (
        with_local_fallback
        and primary.name != ProviderName.LOCAL
        and registry.is_available(ProviderName.LOCAL)
    ):
        fallback = ProviderName.LOCAL
    return ProviderSelection(
        primary=primary.name,
        fallback=fallback,
        reason=reason,
        cost=primary.cost_per_call,
        accuracy=primary.accuracy_tier,
    )


def _local_selection(registry: ProviderRegistry, reason: str) -> ProviderSelection:
    local = registry.get(ProviderName.LOCAL) or ProviderDescriptor(
        name=ProviderName.LOCAL,
        cost_per_call=0.0,
        speed_tier=SpeedTier.SLOW,
        accuracy_tier=AccuracyTier.MEDIUM,
    )
    return ProviderSelection(
        primary=local.name,
        fallback=None,
        reason=reason,
        cost=local.cost_per_call,
        accuracy=local.accuracy_tier,
    )


def select_provider(
    quality: ImageQualityProfile,
    request: RecognitionRequest,
    registry: ProviderRegistry,
    settings: Settings,
) -> ProviderSelection:
    """Choose a primary (and optional fallback) provider for one request."""
    available = registry.available()
    budget_limit = request.budget_limit

    if len(available) == 1:
        only = available[0]
        selection = ProviderSelection(
            primary=only.name,
            fallback=None,
            reason="Only one provider available",
            cost=only.cost_per_call,
            accuracy=only.accuracy_tier,
        )
    elif budget_limit is not None and budget_limit <= 0:
        selection = _local_selection(registry, "Zero budget - using free provider")
    else:
        prefers_speed = (
            request.quality_hint == QualityHint.FAST
            or request.timeout_ms < settings.fast_timeout_ms
        )
        if quality.score >= settings.quality_high_threshold and prefers_speed:
            priority = SPEED_PRIORITY
            reason = "High quality image - optimizing for speed"
        elif quality.score >= settings.quality_high_threshold:
            priority = ACCURACY_PRIORITY
            reason = "High quality image - using most accurate provider"
        elif quality.score >= settings.quality_medium_threshold:
            priority = ACCURACY_PRIORITY
            reason = "Medium quality image - using accurate provider"
        else:
            priority = ACCURACY_PRIORITY
            reason = "Low quality image - using most accurate provider"

        chosen = _first_affordable(registry, priority, budget_limit)
        priced_out = any(not _within_budget(d, budget_limit) for d in available)
        if chosen is None or (chosen.name == ProviderName.LOCAL and priced_out):
            selection = _local_selection(registry, BUDGET_REASON)
        else:
            selection = _selection(registry, chosen, reason, with_local_fallback=True)

    logger.info(
        "provider_selected | primary=%s | fallback=%s | quality=%.2f | budget=%s | reason=%r",
        selection.primary.value,
        selection.fallback.value if selection.fallback else None,
        quality.score,
        budget_limit,
        selection.reason,
    )
    return selection
