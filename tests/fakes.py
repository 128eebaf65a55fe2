"""In-memory stand-ins for provider adapters used by dispatcher and API tests."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from promptwatch.execution.errors import ProviderError
from promptwatch.providers.types import ProviderResult, ProviderSettings

DEFAULT_ANSWER = (
    "For remote teams, NordLayer and Perimeter 81 are the usual shortlist.\n"
    "1. NordLayer - simple rollout, good pricing\n"
    "2. Perimeter 81 - strong zero-trust features\n\n"
    "See https://nordlayer.com/blog/business-vpn and https://www.g2.com/categories/business-vpn for reviews."
)

DEFAULT_ANALYSIS: dict[str, Any] = {
    "rankings": [
        {"position": 1, "company": "NordLayer", "sentiment": "positive", "sentimentScore": 85},
        {"position": 2, "company": "Perimeter 81", "sentiment": "positive", "sentimentScore": 78},
    ],
    "brandMentioned": True,
    "brandPosition": 1,
    "brandSentiment": "positive",
    "brandSentimentScore": 85,
    "brandContext": "listed first for remote teams",
    "competitors": ["perimeter 81"],
    "competitorSentiments": [{"name": "Perimeter 81", "sentiment": "positive", "sentimentScore": 78}],
    "overallSentiment": "positive",
    "sentimentScore": 80,
    "confidence": 90,
    "sources": [
        {
            "domain": "nordlayer.com",
            "url": "https://nordlayer.com/blog/business-vpn",
            "type": "Corporate",
            "pageType": "Article",
            "associatedBrands": ["NordLayer"],
        },
        {
            "domain": "g2.com",
            "url": "https://www.g2.com/categories/business-vpn",
            "type": "UGC",
            "pageType": "Category Page",
            "associatedBrands": ["NordLayer", "Perimeter 81"],
        },
    ],
}


class FakeAdapterFactory:
    """Drop-in for build_adapter. All adapters it builds share its settings and counters."""

    def __init__(
        self,
        answer: str = DEFAULT_ANSWER,
        analysis: dict[str, Any] | None = None,
        delay: float = 0.0,
    ):
        self.answer = answer
        self.analysis = analysis if analysis is not None else DEFAULT_ANALYSIS
        self.delay = delay
        self.errors: dict[str, ProviderError] = {}  # platform_id -> error returned by invoke
        self.analysis_error: Exception | None = None
        self.on_invoke: Callable[[ProviderSettings, str], Awaitable[None]] | None = None
        self.invocations: list[tuple[str, str]] = []
        self.analysis_calls = 0
        self.analysis_prompts: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.built: list[tuple[str, float]] = []

    def __call__(self, config: ProviderSettings, timeout: float = 60.0) -> "FakeAdapter":
        self.built.append((config.platform_id, timeout))
        return FakeAdapter(config, self)


class FakeAdapter:
    def __init__(self, config: ProviderSettings, factory: FakeAdapterFactory):
        self.config = config
        self.factory = factory

    async def invoke(self, prompt_text: str, temperature: float = 0.7) -> ProviderResult:
        f = self.factory
        f.invocations.append((self.config.platform_id, prompt_text))
        f.in_flight += 1
        f.peak_in_flight = max(f.peak_in_flight, f.in_flight)
        try:
            if f.on_invoke is not None:
                await f.on_invoke(self.config, prompt_text)
            await asyncio.sleep(f.delay)
        finally:
            f.in_flight -= 1

        error = f.errors.get(self.config.platform_id)
        if error is not None:
            return ProviderResult(error=error)
        return ProviderResult(text=f.answer, model_version=self.config.model, cost_usd=0.0012, latency_ms=5)

    async def complete_json(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float = 0.2
    ) -> dict[str, Any]:
        self.factory.analysis_calls += 1
        self.factory.analysis_prompts.append(user_prompt)
        if self.factory.analysis_error is not None:
            raise self.factory.analysis_error
        return self.factory.analysis
