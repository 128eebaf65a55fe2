"""Tests for source URL extraction and cited-page metadata."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from promptwatch.analysis.sources import (
    collect_urls,
    extract_urls,
    fetch_metadata,
    is_placeholder_domain,
    normalize_domain,
    parse_page_metadata,
)
from promptwatch.analysis.types import ExtractedUrl, PageMetadata

CLIENT = "promptwatch.analysis.sources.httpx.AsyncClient"


class TestNormalizeDomain:
    def test_full_url(self):
        assert normalize_domain("https://www.G2.com/categories/vpn?x=1") == "g2.com"

    def test_bare_domain(self):
        assert normalize_domain("nordlayer.com") == "nordlayer.com"

    def test_empty(self):
        assert normalize_domain("  ") == ""


class TestPlaceholders:
    def test_placeholder(self):
        assert is_placeholder_domain("example.com")
        assert is_placeholder_domain("www.yourcompany.com")
        assert is_placeholder_domain("docs.acme.com")

    def test_real_domain(self):
        assert not is_placeholder_domain("tailscale.com")


class TestExtractUrls:
    def test_empty_text(self):
        assert extract_urls("") == []

    def test_inline_urls(self):
        text = "Compare plans at https://nordlayer.com/pricing. Reviews: https://www.g2.com/products/nordlayer)."
        urls = [u.url for u in extract_urls(text)]
        assert "https://nordlayer.com/pricing" in urls
        assert "https://www.g2.com/products/nordlayer" in urls

    def test_trailing_punctuation_stripped(self):
        (item,) = extract_urls("Read https://tailscale.com/blog.")
        assert item.url == "https://tailscale.com/blog"
        assert item.domain == "tailscale.com"

    def test_sources_section_titles(self):
        text = (
            "NordLayer is a good choice.\n\n"
            "## Sources\n"
            "1. [NordLayer Blog] - https://nordlayer.com/blog\n"
            "- [Tailscale docs](https://tailscale.com/kb)\n"
        )
        urls, _ = collect_urls(text)
        by_url = {u.url: u for u in urls}
        assert by_url["https://nordlayer.com/blog"].name == "NordLayer Blog"
        assert by_url["https://tailscale.com/kb"].name == "Tailscale docs"

    def test_bare_domains(self):
        urls = extract_urls("Many admins discuss this on reddit.com and news.ycombinator.com")
        domains = {u.domain for u in urls}
        assert "reddit.com" in domains

    def test_placeholders_skipped(self):
        assert extract_urls("Visit https://example.com/page or yourcompany.com") == []


class TestCollectUrls:
    def test_deduplicates_and_counts(self):
        text = "See https://nordlayer.com/blog and again https://nordlayer.com/blog"
        urls, counts = collect_urls(text)
        assert [u.url for u in urls] == ["https://nordlayer.com/blog"]
        assert counts["https://nordlayer.com/blog"] == 2

    def test_merges_native_citations(self):
        urls, counts = collect_urls("NordLayer is popular.", ["https://www.g2.com/vpn", "https://example.com/x"])
        assert [u.url for u in urls] == ["https://www.g2.com/vpn"]
        assert counts["https://www.g2.com/vpn"] == 1


# =========================================================================
# Page metadata
# =========================================================================

G2_HTML = """<html><head>
<title>  Best Business VPN Software
  in 2025 </title>
<meta content="Compare business VPNs by verified reviews." name="Description">
</head><body><h1>Business VPN Software</h1><h1>Second</h1></body></html>"""


def _page(status_code: int = 200, text: str = G2_HTML, content_type: str = "text/html; charset=utf-8") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.headers = {"content-type": content_type}
    return resp


def _mock_client(MockClient, pages: dict) -> AsyncMock:
    async def get(url, **kwargs):
        page = pages[url]
        if isinstance(page, Exception):
            raise page
        return page

    mock_client = AsyncMock()
    mock_client.get.side_effect = get
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    MockClient.return_value = mock_client
    return mock_client


def _urls(*urls: str) -> list[ExtractedUrl]:
    return [ExtractedUrl(url=u, domain=normalize_domain(u)) for u in urls]


class TestParsePageMetadata:
    def test_title_description_h1(self):
        meta = parse_page_metadata(G2_HTML)
        assert meta == PageMetadata(
            title="Best Business VPN Software in 2025",
            description="Compare business VPNs by verified reviews.",
            h1="Business VPN Software",
        )

    def test_missing_tags(self):
        assert parse_page_metadata("<html><body><p>no head</p></body></html>") == PageMetadata()


class TestFetchMetadata:
    @pytest.mark.asyncio
    async def test_failures_left_out(self):
        pages = {
            "https://www.g2.com/categories/vpn": _page(),
            "https://reddit.com/r/vpn": _page(status_code=403),
            "https://tailscale.com/pricing.pdf": _page(content_type="application/pdf"),
            "https://slow.io/post": httpx.ConnectTimeout("timed out"),
        }
        with patch(CLIENT) as MockClient:
            client = _mock_client(MockClient, pages)
            found = await fetch_metadata(_urls(*pages), timeout=2.5)

        assert list(found) == ["https://www.g2.com/categories/vpn"]
        assert found["https://www.g2.com/categories/vpn"].title == "Best Business VPN Software in 2025"
        assert client.get.await_count == 4
        for call in client.get.await_args_list:
            assert call.kwargs["timeout"] == 2.5
        assert "promptwatch" in MockClient.call_args.kwargs["headers"]["User-Agent"]

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        state = {"in_flight": 0, "peak": 0}

        async def get(url, **kwargs):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            return _page()

        urls = _urls(*(f"https://site{i}.com/page" for i in range(7)))
        with patch(CLIENT) as MockClient:
            client = _mock_client(MockClient, {})
            client.get.side_effect = get
            found = await fetch_metadata(urls, concurrency=2)

        assert len(found) == 7
        assert state["peak"] == 2

    @pytest.mark.asyncio
    async def test_no_urls_no_client(self):
        with patch(CLIENT) as MockClient:
            assert await fetch_metadata([]) == {}
        MockClient.assert_not_called()
