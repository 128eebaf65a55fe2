"""Structured extraction: turn a raw model answer into mention, rank,
sentiment and source data.

The business's primary provider is asked for output constrained to the
CombinedAnalysis schema. The step fails closed. If the call fails, or the
output does not validate after the configured retries, the result is the
``analysis_failed`` sentinel and never a partial parse.

After validation the model's claims are checked against the answer and
the live competitor registry:
  - brandMentioned=false is trusted as-is
  - brandMentioned=true needs a whole-word match of the brand in the answer
  - competitors must be registered (case-insensitive) and present in the answer
  - rank, brand sentiment and context are dropped when the brand is absent
  - sources are the URLs found in the answer; the model only labels them,
    and an unlabeled url gets its domain's label or Other/Other
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter

from pydantic import ValidationError as SchemaValidationError

from promptwatch.analysis.brands import match_registry_name, text_contains_brand
from promptwatch.analysis.sources import collect_urls, fetch_metadata, normalize_domain
from promptwatch.analysis.types import CompetitorRef, ExtractedUrl, ExtractionResult, PageMetadata
from promptwatch.core.config import settings
from promptwatch.execution.errors import AnalysisError, ProviderError, ProviderErrorKind
from promptwatch.providers.adapters import BaseProviderAdapter
from promptwatch.schemas.analysis import (
    CombinedAnalysis,
    MentionAnalysis,
    PageType,
    SourceItem,
    SourceRecord,
    SourceType,
    combined_analysis_json_schema,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_ANALYSIS_SYSTEM_PROMPT = """\
You analyze AI assistant answers for brand visibility monitoring.
Return ONLY a JSON object that matches the provided schema. No markdown, no commentary.
Never invent companies, competitors or URLs that are not present in the input."""

_ANALYSIS_USER_TEMPLATE = """\
Analyze this AI response for brand mentions and categorize its sources.

Response to analyze:
{response}

Brand to check: {brand}
Brand website domain: {brand_domain}
Competitors to check: {competitors}
Competitor domains: {competitor_domains}
URLs found:
{urls}

INSTRUCTIONS:
1. rankings: every company or product recommended in the response, with its list position if it has one.
2. brandMentioned: true only if "{brand}" itself is mentioned (case-insensitive, whole words).
   brandPosition: its position in rankings, or null.
   brandSentiment / brandSentimentScore: "positive" (75-100), "neutral" (40-74), "negative" (0-39).
   brandContext: a short phrase on how the brand was mentioned.
3. competitors: names from the competitor list that appear in the response, spelled as in the list.
   competitorSentiments: sentiment, sentimentScore and a short context for each one.
4. sources: classify ONLY the URLs listed above. If the list says "none", return [].
   type: "You" for {brand_domain}, "Competitor" for competitor domains, otherwise
   "Editorial", "Reference", "UGC", "Corporate", "Institutional" or "Other".
   pageType: "Article", "Alternative", "Comparison", "How-To Guide", "Listicle", "Product Page",
   "Discussion", "Homepage", "Profile", "Category Page" or "Other" (judge from the URL path and any Title,
   Description or H1 given for it).
   associatedBrands: brands cited together with the source.
5. overallSentiment plus sentimentScore 0-100, and confidence 0-100 in your analysis."""


def _url_line(url: ExtractedUrl, meta: PageMetadata | None) -> str:
    parts = [f"URL: {url.url}"]
    title = url.name or (meta.title if meta else None)
    if title:
        parts.append(f"Title: {title}")
    if meta and meta.description:
        parts.append(f"Description: {meta.description[:150]}")
    if meta and meta.h1 and meta.h1 != meta.title:
        parts.append(f"H1: {meta.h1}")
    return " | ".join(parts)


def build_analysis_prompt(
    raw_answer: str,
    brand_name: str,
    competitors: list[CompetitorRef],
    urls: list[ExtractedUrl],
    brand_website: str | None = None,
    max_chars: int = 6000,
    metadata: dict[str, PageMetadata] | None = None,
) -> str:
    """Render the user prompt for the analysis call.

    Each URL line carries the page title, description and h1 when
    ``metadata`` has them.
    """
    metadata = metadata or {}
    response = raw_answer if len(raw_answer) <= max_chars else raw_answer[:max_chars] + "...[truncated]"
    competitor_domains = [
        f"{c.name}: {normalize_domain(c.website)}" for c in competitors if c.website and normalize_domain(c.website)
    ]
    url_lines = [_url_line(u, metadata.get(u.url)) for u in urls]
    return _ANALYSIS_USER_TEMPLATE.format(
        response=response,
        brand=brand_name,
        brand_domain=normalize_domain(brand_website or "") or "unknown",
        competitors=", ".join(c.name for c in competitors) or "none",
        competitor_domains=", ".join(competitor_domains) or "none",
        urls="\n".join(url_lines) or "none",
    )


# ---------------------------------------------------------------------------
# Edge rules
# ---------------------------------------------------------------------------


def _rank_from_rankings(analysis: CombinedAnalysis, brand_name: str) -> int | None:
    for entry in analysis.rankings:
        if text_contains_brand(entry.company, brand_name) or text_contains_brand(brand_name, entry.company):
            return entry.position
    return None


def _source_type(domain: str, brand_domain: str, competitor_domains: set[str], claimed: SourceType) -> SourceType:
    if brand_domain and (domain == brand_domain or domain.endswith("." + brand_domain)):
        return SourceType.YOU
    if any(domain == d or domain.endswith("." + d) for d in competitor_domains):
        return SourceType.COMPETITOR
    if claimed in (SourceType.YOU, SourceType.COMPETITOR):
        return SourceType.CORPORATE
    return claimed


def _known_brands(names: list[str], brand_name: str, registry: list[str]) -> list[str]:
    known: list[str] = []
    for name in names:
        canonical = match_registry_name(name, [brand_name, *registry])
        if canonical and canonical not in known:
            known.append(canonical)
    return known


def resolve_analysis(
    analysis: CombinedAnalysis,
    raw_answer: str,
    brand_name: str,
    competitors: list[CompetitorRef],
    urls: list[ExtractedUrl],
    citation_counts: Counter | None = None,
    brand_website: str | None = None,
) -> ExtractionResult:
    """Apply the verification rules to a schema-valid analysis."""
    citation_counts = citation_counts or Counter()
    registry = [c.name for c in competitors]

    brand_mentioned = analysis.brand_mentioned and text_contains_brand(raw_answer, brand_name)
    if analysis.brand_mentioned and not brand_mentioned:
        logger.info("Discarding brand mention of %r not found in answer text", brand_name)

    mentioned: list[str] = []
    for claimed in analysis.competitors:
        canonical = match_registry_name(claimed, registry)
        if canonical is None:
            logger.debug("Ignoring unregistered competitor %r", claimed)
            continue
        if canonical in mentioned:
            continue
        if not text_contains_brand(raw_answer, canonical):
            logger.info("Discarding competitor mention of %r not found in answer text", canonical)
            continue
        mentioned.append(canonical)

    sentiments = []
    for item in analysis.competitor_sentiments:
        canonical = match_registry_name(item.name, registry)
        if canonical in mentioned:
            sentiments.append(item.model_copy(update={"name": canonical}))

    brand_rank = None
    if brand_mentioned:
        brand_rank = analysis.brand_position or _rank_from_rankings(analysis, brand_name)

    brand_domain = normalize_domain(brand_website or "")
    competitor_domains = {normalize_domain(c.website) for c in competitors if c.website} - {""}

    # Model labels by url, plus a per-domain type for urls it did not list
    labels: dict[str, SourceItem] = {}
    domain_types: dict[str, SourceType] = {}
    for item in analysis.sources:
        url = (item.url or "").strip()
        if url:
            labels.setdefault(url.lower(), item)
        domain = normalize_domain(url) or item.domain.lower().removeprefix("www.")
        domain_types.setdefault(domain, item.type)

    sources: list[SourceRecord] = []
    for extracted in urls:
        url_key = extracted.url.lower()
        item = labels.get(url_key)
        claimed = item.type if item else domain_types.get(extracted.domain, SourceType.OTHER)
        sources.append(
            SourceRecord(
                domain=extracted.domain,
                url=extracted.url,
                type=_source_type(extracted.domain, brand_domain, competitor_domains, claimed),
                page_type=item.page_type if item else PageType.OTHER,
                associated_brands=_known_brands(item.associated_brands, brand_name, registry) if item else [],
                citations=max(1, citation_counts.get(url_key, 1)),
            )
        )

    mention_analysis = MentionAnalysis(
        rankings=analysis.rankings,
        brand_mentioned=brand_mentioned,
        brand_position=brand_rank,
        brand_sentiment=analysis.brand_sentiment if brand_mentioned else None,
        brand_sentiment_score=analysis.brand_sentiment_score if brand_mentioned else None,
        brand_context=analysis.brand_context if brand_mentioned else None,
        overall_sentiment=analysis.overall_sentiment,
        sentiment_score=analysis.sentiment_score,
        confidence=analysis.confidence,
        competitor_sentiments=sentiments,
    )

    return ExtractionResult(
        brand_mentioned=brand_mentioned,
        brand_rank=brand_rank,
        competitors_mentioned=mentioned,
        mention_analysis=mention_analysis,
        sources=sources,
        confidence=round(analysis.confidence / 100, 4),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ExtractionEngine:
    """Runs the schema-constrained analysis call against the primary provider."""

    def __init__(
        self,
        adapter: BaseProviderAdapter | None,
        *,
        max_retries: int | None = None,
        max_chars: int | None = None,
        temperature: float | None = None,
        retry_delay: float = 1.0,
        page_metadata: bool | None = None,
    ):
        self.adapter = adapter
        self.max_retries = settings.analysis_max_retries if max_retries is None else max_retries
        self.max_chars = max_chars or settings.analysis_max_chars
        self.temperature = settings.analysis_temperature if temperature is None else temperature
        self.retry_delay = retry_delay
        self.page_metadata = settings.page_metadata_enabled if page_metadata is None else page_metadata
        self._schema = combined_analysis_json_schema()

    async def extract(
        self,
        raw_answer: str,
        brand_name: str,
        competitors: list[CompetitorRef],
        *,
        brand_website: str | None = None,
        cited_urls: list[str] | None = None,
    ) -> ExtractionResult:
        if self.adapter is None:
            return ExtractionResult.failed("no primary provider configured")

        urls, counts = collect_urls(raw_answer, cited_urls)
        metadata = await fetch_metadata(urls) if self.page_metadata else {}
        prompt = build_analysis_prompt(
            raw_answer, brand_name, competitors, urls, brand_website, self.max_chars, metadata=metadata
        )

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info("Retrying analysis, attempt %d/%d", attempt + 1, self.max_retries + 1)
                await asyncio.sleep(self.retry_delay * attempt)
            try:
                data = await self.adapter.complete_json(
                    _ANALYSIS_SYSTEM_PROMPT, prompt, self._schema, temperature=self.temperature
                )
                analysis = CombinedAnalysis.model_validate(data)
            except ProviderError as e:
                last_error = e
                logger.warning("Analysis call failed (attempt %d): %s", attempt + 1, e)
                if e.kind == ProviderErrorKind.AUTH:
                    break
                continue
            except AnalysisError as e:
                last_error = e
                logger.warning("Analysis output unusable (attempt %d): %s", attempt + 1, e)
                continue
            except SchemaValidationError as e:
                last_error = AnalysisError(f"{e.error_count()} schema violation(s)")
                logger.warning("Analysis output failed schema validation (attempt %d): %s", attempt + 1, e)
                continue

            return resolve_analysis(analysis, raw_answer, brand_name, competitors, urls, counts, brand_website)

        return ExtractionResult.failed(str(last_error) if last_error else "analysis failed")
