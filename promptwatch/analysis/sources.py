"""Source extraction: find the URLs and domains a model answer cites.

Three passes over the answer:
  1. A structured "## Sources" section ("1. [Name] - URL", "- [Name](URL)", ...)
  2. Inline http(s) URLs in the body
  3. Bare domains with common TLDs ("see reddit.com")

Placeholder domains that models use as examples (example.com, acme.com, ...)
are skipped. Provider-native citations are merged in by ``collect_urls``.

``fetch_metadata`` reads the title, description and h1 of the cited pages
so the analysis call can classify them by content, not just by url.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from promptwatch.analysis.types import ExtractedUrl, PageMetadata
from promptwatch.core.config import settings

logger = logging.getLogger(__name__)

PLACEHOLDER_DOMAINS = frozenset(
    {
        "example.com", "example.org", "example.net",
        "yourcompany.com", "yourdomain.com", "yoursite.com",
        "company.com", "domain.com", "website.com",
        "mycompany.com", "mydomain.com", "mysite.com",
        "acme.com", "test.com", "demo.com",
        "placeholder.com", "sample.com", "foo.com", "bar.com",
    }
)  # fmt: skip

_SOURCES_SECTION_RE = re.compile(r"##\s*Sources?\s*\n(.*?)(?:\n##|\n\n\n|\Z)", re.IGNORECASE | re.DOTALL)
_SOURCES_TAIL_RE = re.compile(r"##\s*Sources?\s*\n.*\Z", re.IGNORECASE | re.DOTALL)

_STRUCTURED_PATTERNS = (
    re.compile(r"\d+\.\s*\[([^\]]+)\]\s*-\s*(https?://[^\s`]+)"),
    re.compile(r"\d+\.\s*([^-\n]+?)\s*-\s*(https?://[^\s`]+)"),
    re.compile(r"-\s*\[([^\]]+)\]\((https?://[^)`]+)\)"),
    re.compile(r"-\s*([^:\n]+?):\s*(https?://[^\s`]+)"),
)

_URL_RE = re.compile(r"https?://(?:www\.)?[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)+(?:/[^\s)`]*)?")
_BARE_DOMAIN_RE = re.compile(
    r"(?:^|[\s(])(?:www\.)?([a-zA-Z0-9-]+\.(?:com|org|net|io|dev|ai|co|app|tech|cloud))\b",
    re.MULTILINE,
)
_TRAILING_PUNCT_RE = re.compile(r"[.,;:!?)\]`]+$")


def normalize_domain(url_or_domain: str) -> str:
    """Lower-cased hostname without ``www.``. Accepts full URLs or bare domains."""
    value = url_or_domain.strip()
    if not value:
        return ""
    if "://" not in value:
        value = "https://" + value
    try:
        host = urlsplit(value).hostname or ""
    except ValueError:
        return ""
    return host.lower().removeprefix("www.")


def is_placeholder_domain(domain: str) -> bool:
    domain = domain.lower().removeprefix("www.")
    return any(domain == p or domain.endswith("." + p) for p in PLACEHOLDER_DOMAINS)


def _clean_url(raw: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", raw.strip())


def _make(url: str, name: str | None = None) -> ExtractedUrl | None:
    domain = normalize_domain(url)
    if not domain or "." not in domain or is_placeholder_domain(domain):
        return None
    return ExtractedUrl(url=url, domain=domain, name=name or None)


def extract_urls(text: str) -> list[ExtractedUrl]:
    """Extract cited URLs from an answer, in order of appearance. May contain repeats."""
    if not text:
        return []

    found: list[ExtractedUrl] = []

    section = _SOURCES_SECTION_RE.search(text)
    if section:
        for pattern in _STRUCTURED_PATTERNS:
            for match in pattern.finditer(section.group(1)):
                item = _make(_clean_url(match.group(2)), match.group(1).strip())
                if item:
                    found.append(item)

    body = _SOURCES_TAIL_RE.sub("", text)

    for match in _URL_RE.finditer(body):
        item = _make(_clean_url(match.group(0)))
        if item:
            found.append(item)

    for match in _BARE_DOMAIN_RE.finditer(body):
        domain = match.group(1).lower().removeprefix("www.")
        item = _make(f"https://{domain}")
        if item:
            found.append(item)

    return found


def collect_urls(text: str, cited_urls: list[str] | None = None) -> tuple[list[ExtractedUrl], Counter]:
    """Unique extracted URLs plus a citation count per lower-cased URL.

    Native citations reported by the provider are appended after the
    URLs found in the text.
    """
    items = extract_urls(text)
    for raw in cited_urls or []:
        item = _make(_clean_url(raw))
        if item:
            items.append(item)

    counts: Counter = Counter(item.url.lower() for item in items)
    unique: dict[str, ExtractedUrl] = {}
    for item in items:
        key = item.url.lower()
        existing = unique.get(key)
        if existing is None:
            unique[key] = item
        elif existing.name is None and item.name:
            existing.name = item.name
    return list(unique.values()), counts


# ---------------------------------------------------------------------------
# Page metadata
# ---------------------------------------------------------------------------

_FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; promptwatch/1.0)",
    "Accept": "text/html",
}


def _text(value) -> str | None:
    text = " ".join(str(value).split()) if value else ""
    return text or None


def parse_page_metadata(html: str) -> PageMetadata:
    """Title, meta description and first h1 of an HTML page."""
    soup = BeautifulSoup(html, "lxml")
    description = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    h1 = soup.find("h1")
    return PageMetadata(
        title=_text(soup.title.get_text()) if soup.title else None,
        description=_text(description.get("content")) if description else None,
        h1=_text(h1.get_text()) if h1 else None,
    )


async def fetch_page_metadata(
    client: httpx.AsyncClient,
    url: str,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> PageMetadata | None:
    """Metadata for one page, or None when it cannot be fetched as HTML."""
    async with semaphore:
        try:
            resp = await client.get(url, timeout=timeout, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Metadata fetch failed for %s: %s", url, exc)
            return None
    if resp.status_code != 200 or "html" not in resp.headers.get("content-type", ""):
        logger.debug("Metadata fetch for %s returned %d", url, resp.status_code)
        return None
    return parse_page_metadata(resp.text)


async def fetch_metadata(
    urls: list[ExtractedUrl],
    *,
    concurrency: int | None = None,
    timeout: float | None = None,
) -> dict[str, PageMetadata]:
    """Fetch metadata for cited pages, keyed by url.

    At most ``concurrency`` requests run at once and each is bounded by
    ``timeout``. Pages that fail are left out; classification then falls
    back to the url alone.
    """
    if not urls:
        return {}
    semaphore = asyncio.Semaphore(concurrency or settings.page_metadata_concurrency)
    timeout = timeout or settings.page_metadata_timeout_seconds

    async with httpx.AsyncClient(headers=_FETCH_HEADERS) as client:
        results = await asyncio.gather(*(fetch_page_metadata(client, u.url, semaphore, timeout) for u in urls))

    found = {u.url: meta for u, meta in zip(urls, results) if meta is not None}
    logger.debug("Fetched metadata for %d of %d cited page(s)", len(found), len(urls))
    return found
