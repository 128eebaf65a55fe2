"""Visibility scoring.

Per execution:
  - business_visibility = 1 if the brand was mentioned else 0
  - competitor_visibility[name] = 1 if mentioned else 0, for EVERY registered competitor
  - share_of_voice = brand_mentions / (brand_mentions + competitor_mentions) × 100

Across executions (read side):
  - aggregate_visibility: mean business_visibility × 100 over records that have it
  - average_rank: mean brand rank over records where the brand was mentioned

Share-of-voice values are rounded to 1 decimal. A zero denominator gives 0,
never NaN.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from promptwatch.analysis.types import ExtractionResult, VisibilityMetrics


class ScoredRecord(Protocol):
    """Anything carrying the per-execution scalars (ExecutionRecord, API rows, test doubles)."""

    business_visibility: int | None
    brand_rank: int | None
    share_of_voice: float | None


def business_visibility(extraction: ExtractionResult) -> int:
    return 1 if extraction.brand_mentioned else 0


def competitor_visibilities(extraction: ExtractionResult, registry: list[str]) -> dict[str, int]:
    """Visibility flag for every registered competitor, including unmentioned ones.

    The zero entries give later aggregation its true denominators.
    """
    mentioned = set(extraction.competitors_mentioned)
    return {name: 1 if name in mentioned else 0 for name in registry}


def share_of_voice(brand_mentions: int, competitor_mentions: int) -> float:
    """Percentage of entity mentions attributable to the brand.

    Returns:
        Float between 0.0 and 100.0, 0.0 when nothing was mentioned.
    """
    total = brand_mentions + competitor_mentions
    if total <= 0:
        return 0.0
    return round(min(max(brand_mentions / total, 0.0), 1.0) * 100, 1)


def competitor_share_of_voice(extraction: ExtractionResult, registry: list[str]) -> dict[str, float]:
    """Each mentioned registered competitor gets 1 / total × 100, unmentioned ones 0."""
    claimed = set(extraction.competitors_mentioned)
    mentioned = [name for name in registry if name in claimed]
    total = extraction.brand_mentions + len(mentioned)
    if total == 0:
        return {name: 0.0 for name in registry}
    share = round(100 / total, 1)
    return {name: share if name in mentioned else 0.0 for name in registry}


def compute_visibility(extraction: ExtractionResult, registry: list[str]) -> VisibilityMetrics:
    """All per-execution metrics for one extraction."""
    competitor_flags = competitor_visibilities(extraction, registry)
    return VisibilityMetrics(
        business_visibility=business_visibility(extraction),
        competitor_visibilities=competitor_flags,
        share_of_voice=share_of_voice(extraction.brand_mentions, sum(competitor_flags.values())),
        competitor_share_of_voice=competitor_share_of_voice(extraction, registry),
        brand_rank=extraction.brand_rank if extraction.brand_mentioned else None,
    )


# ---------------------------------------------------------------------------
# Read-side aggregates
# ---------------------------------------------------------------------------


def aggregate_visibility(records: Iterable[ScoredRecord]) -> float | None:
    """Visibility percentage over records that carry a visibility value. None if there are none."""
    values = [r.business_visibility for r in records if r.business_visibility is not None]
    if not values:
        return None
    return round(sum(values) / len(values) * 100, 1)


def average_rank(records: Iterable[ScoredRecord]) -> float | None:
    """Mean rank over records where the brand was mentioned and ranked.

    Records with business_visibility != 1 are excluded, since a rank for an
    absent brand is undefined rather than zero.
    """
    ranks = [r.brand_rank for r in records if r.business_visibility == 1 and r.brand_rank is not None]
    if not ranks:
        return None
    return round(sum(ranks) / len(ranks), 2)


def average_share_of_voice(records: Iterable[ScoredRecord]) -> float | None:
    values = [r.share_of_voice for r in records if r.share_of_voice is not None]
    if not values:
        return None
    return round(sum(values) / len(values), 1)
