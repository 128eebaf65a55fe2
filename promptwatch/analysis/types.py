"""Core types for answer analysis."""

from __future__ import annotations

from dataclasses import dataclass, field

from promptwatch.schemas.analysis import MentionAnalysis, SourceRecord


@dataclass
class ExtractedUrl:
    """A URL or bare domain found in a model answer."""

    url: str
    domain: str
    name: str | None = None  # link title from a structured Sources section


@dataclass
class PageMetadata:
    """What a cited page says about itself. Any field may be missing."""

    title: str | None = None
    description: str | None = None
    h1: str | None = None


@dataclass
class CompetitorRef:
    """Registry entry as seen by the analysis step."""

    name: str
    website: str | None = None


@dataclass
class ExtractionResult:
    """Structured output of the extraction step.

    ``analysis_failed`` marks the fail-closed sentinel: zero mentions,
    confidence 0, nothing usable for scoring.
    """

    brand_mentioned: bool = False
    brand_rank: int | None = None
    competitors_mentioned: list[str] = field(default_factory=list)
    mention_analysis: MentionAnalysis | None = None
    sources: list[SourceRecord] = field(default_factory=list)
    confidence: float = 0.0  # 0..1
    analysis_failed: bool = False
    failure_reason: str | None = None

    @property
    def brand_mentions(self) -> int:
        return 1 if self.brand_mentioned else 0

    @classmethod
    def failed(cls, reason: str) -> ExtractionResult:
        return cls(analysis_failed=True, failure_reason=reason)


@dataclass
class VisibilityMetrics:
    business_visibility: int = 0  # 0 | 1
    competitor_visibilities: dict[str, int] = field(default_factory=dict)
    share_of_voice: float = 0.0  # 0..100
    competitor_share_of_voice: dict[str, float] = field(default_factory=dict)
    brand_rank: int | None = None
