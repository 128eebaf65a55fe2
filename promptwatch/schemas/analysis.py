"""Structured-analysis schemas.

``CombinedAnalysis`` is the fixed contract the analysis model must return.
Anything that does not validate against it is rejected as a whole.
``MentionAnalysis`` and ``SourceRecord`` are the sub-documents stored on
an execution record after the edge rules have been applied.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class SourceType(str, Enum):
    """Who published a cited source, relative to the tracked brand."""

    YOU = "You"
    COMPETITOR = "Competitor"
    CORPORATE = "Corporate"
    REFERENCE = "Reference"
    EDITORIAL = "Editorial"
    UGC = "UGC"
    INSTITUTIONAL = "Institutional"
    OTHER = "Other"


class PageType(str, Enum):
    ARTICLE = "Article"
    ALTERNATIVE = "Alternative"
    COMPARISON = "Comparison"
    HOW_TO_GUIDE = "How-To Guide"
    LISTICLE = "Listicle"
    PRODUCT_PAGE = "Product Page"
    DISCUSSION = "Discussion"
    HOMEPAGE = "Homepage"
    PROFILE = "Profile"
    CATEGORY_PAGE = "Category Page"
    OTHER = "Other"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Model output contract
# ---------------------------------------------------------------------------


class RankingEntry(_CamelModel):
    position: int = Field(ge=1)
    company: str = Field(min_length=1)
    reason: str | None = None
    sentiment: Sentiment | None = None
    sentiment_score: float | None = Field(default=None, ge=0, le=100)


class CompetitorSentiment(_CamelModel):
    name: str = Field(min_length=1)
    sentiment: Sentiment
    sentiment_score: float | None = Field(default=None, ge=0, le=100)
    context: str | None = None


class SourceItem(_CamelModel):
    domain: str = Field(min_length=1)
    url: str | None = None
    type: SourceType
    page_type: PageType = PageType.OTHER
    associated_brands: list[str] = Field(default_factory=list)


class CombinedAnalysis(_CamelModel):
    rankings: list[RankingEntry] = Field(default_factory=list)
    brand_mentioned: bool
    brand_position: int | None = Field(default=None, ge=1)
    brand_sentiment: Sentiment | None = None
    brand_sentiment_score: float | None = Field(default=None, ge=0, le=100)
    brand_context: str | None = None
    competitors: list[str]
    competitor_sentiments: list[CompetitorSentiment] = Field(default_factory=list)
    overall_sentiment: Sentiment
    sentiment_score: float = Field(default=50, ge=0, le=100)
    confidence: float = Field(default=80, ge=0, le=100)
    sources: list[SourceItem] = Field(default_factory=list)


def combined_analysis_json_schema() -> dict:
    """JSON schema handed to providers that support constrained output."""
    return CombinedAnalysis.model_json_schema(by_alias=True)


# ---------------------------------------------------------------------------
# Stored sub-documents
# ---------------------------------------------------------------------------


class MentionAnalysis(_CamelModel):
    rankings: list[RankingEntry] = Field(default_factory=list)
    brand_mentioned: bool = False
    brand_position: int | None = None
    brand_sentiment: Sentiment | None = None
    brand_sentiment_score: float | None = None
    brand_context: str | None = None
    overall_sentiment: Sentiment = Sentiment.NEUTRAL
    sentiment_score: float = 50
    confidence: float = 0
    competitor_sentiments: list[CompetitorSentiment] = Field(default_factory=list)


class SourceRecord(_CamelModel):
    domain: str
    url: str | None = None
    type: SourceType = SourceType.OTHER
    page_type: PageType = PageType.OTHER
    associated_brands: list[str] = Field(default_factory=list)
    citations: int = Field(default=1, ge=1)  # times the url appeared in the answer
