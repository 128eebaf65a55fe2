"""Provider adapters: one uniform call interface per model backend.

Each adapter turns a prompt into the family's HTTP request, sends it and
returns a ProviderResult. ``invoke`` never raises. Every failure comes back
as a classified ProviderError value on the result.

Family-specific behaviors:
  - OpenAI: chat completions, structured output via response_format json_schema
  - xAI: OpenAI-compatible endpoint
  - Perplexity: OpenAI-compatible with native citations
  - Anthropic: Messages API, structured output via a forced tool call
  - Google: Gemini generateContent, SAFETY finish reason is a provider error,
    grounding chunks become citations

Adapters are resolved once per provider configuration with build_adapter().
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from promptwatch.core.metrics import PROVIDER_CALL_DURATION
from promptwatch.execution.errors import AnalysisError, ProviderError, ProviderErrorKind
from promptwatch.providers.types import ProviderFamily, ProviderResult, ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown code fences."""
    fenced = _JSON_FENCE_RE.search(raw or "")
    if fenced:
        raw = fenced.group(1)
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise AnalysisError(f"Analysis response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisError(f"Analysis response is a JSON {type(data).__name__}, expected an object")
    return data


def classify_status(status_code: int) -> ProviderErrorKind | None:
    """Map an HTTP status to an error kind. None means success."""
    if status_code < 400:
        return None
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ProviderErrorKind.TIMEOUT
    return ProviderErrorKind.PROVIDER_ERROR


def _calc_cost(pricing: dict[str, dict[str, float]], model: str, input_tokens: int, output_tokens: int) -> float:
    if not pricing:
        return 0.0
    rates = pricing.get(model) or next(iter(pricing.values()))
    return round((input_tokens * rates["input"] + output_tokens * rates["output"]) / 1_000_000, 6)


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    family: ProviderFamily
    default_model: str = ""
    # Pricing per 1M tokens
    pricing: dict[str, dict[str, float]] = {}

    def __init__(self, config: ProviderSettings, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    # -- request shaping (per family) ---------------------------------------

    @abstractmethod
    def _url(self) -> str: ...

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    def _answer_payload(self, prompt_text: str, temperature: float) -> dict[str, Any]: ...

    @abstractmethod
    def _json_payload(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float
    ) -> dict[str, Any]: ...

    @abstractmethod
    def _parse_answer(self, data: dict[str, Any]) -> ProviderResult: ...

    def _parse_json(self, data: dict[str, Any]) -> dict[str, Any]:
        return parse_json_object(self._parse_answer(data).text)

    def _params(self) -> dict[str, str] | None:
        return None

    # -- transport ------------------------------------------------------------

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self._url(), json=payload, headers=self._headers(), params=self._params())

        kind = classify_status(resp.status_code)
        if kind is not None:
            raise ProviderError(kind, self._error_detail(resp), status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"Non-JSON response body: {e}") from e

    def _error_detail(self, resp: httpx.Response) -> str:
        detail = f"HTTP {resp.status_code} from {self.family.value}"
        try:
            body = resp.json()
        except ValueError:
            return detail
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return f"{detail}: {error['message']}"
            if isinstance(error, str):
                return f"{detail}: {error}"
        return detail

    def _missing_config(self) -> ProviderError | None:
        if not self.config.credential:
            return ProviderError(ProviderErrorKind.AUTH, f"No credential configured for {self.config.platform_id}")
        if not self.model:
            return ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"No model configured for {self.config.platform_id}")
        return None

    # -- public interface -----------------------------------------------------

    async def invoke(self, prompt_text: str, temperature: float = 0.7) -> ProviderResult:
        """Send a prompt and return the answer text or a classified error. Never raises."""
        missing = self._missing_config()
        if missing is not None:
            return ProviderResult(error=missing)

        start = time.monotonic()
        try:
            data = await self._post(self._answer_payload(prompt_text, temperature))
            result = self._parse_answer(data)
            if not result.text.strip():
                result.error = ProviderError(ProviderErrorKind.PROVIDER_ERROR, "Empty response from provider")
        except ProviderError as e:
            result = ProviderResult(error=e)
        except httpx.TimeoutException:
            result = ProviderResult(
                error=ProviderError(ProviderErrorKind.TIMEOUT, f"{self.family.value} timeout after {self.timeout}s")
            )
        except httpx.HTTPError as e:
            result = ProviderResult(error=ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"Transport error: {e}"))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            result = ProviderResult(
                error=ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"Malformed response: {type(e).__name__}: {e}")
            )
        except Exception as e:
            logger.exception("Unexpected error calling %s (%s)", self.config.platform_id, self.family.value)
            result = ProviderResult(error=ProviderError(ProviderErrorKind.UNKNOWN, f"{type(e).__name__}: {e}"))

        result.latency_ms = int((time.monotonic() - start) * 1000)
        outcome = result.error.kind.value if result.error else "success"
        PROVIDER_CALL_DURATION.labels(family=self.family.value, outcome=outcome).observe(result.latency_ms / 1000)
        if result.error:
            logger.warning("%s call failed: %s", self.config.platform_id, result.error)
        return result

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
        temperature: float = 0.2,
    ) -> dict[str, Any]:
        """Schema-constrained generation.

        Raises:
            ProviderError: the call itself failed.
            AnalysisError: the provider answered but not with a JSON object.
        """
        missing = self._missing_config()
        if missing is not None:
            raise missing

        try:
            data = await self._post(self._json_payload(system_prompt, user_prompt, schema, temperature))
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{self.family.value} timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"Transport error: {e}") from e

        try:
            return self._parse_json(data)
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisError(f"Malformed analysis response: {type(e).__name__}: {e}") from e


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseProviderAdapter):
    """OpenAI Chat Completions adapter."""

    family = ProviderFamily.OPENAI
    default_model = "gpt-4o-mini"
    api_url = "https://api.openai.com/v1/chat/completions"
    pricing = {
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4.1": {"input": 2.00, "output": 8.00},
        "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
        "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    }

    def _url(self) -> str:
        return self.api_url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.credential}",
            "Content-Type": "application/json",
        }

    def _answer_payload(self, prompt_text: str, temperature: float) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt_text}],
            "temperature": temperature,
        }

    def _json_payload(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "combined_analysis", "schema": schema},
            },
        }

    def _parse_answer(self, data: dict[str, Any]) -> ProviderResult:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)
        return ProviderResult(
            text=choice["message"].get("content") or "",
            model_version=data.get("model", self.model),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=_calc_cost(self.pricing, self.model, input_tokens, output_tokens),
            cited_urls=self._citations(data),
        )

    def _citations(self, data: dict[str, Any]) -> list[str]:
        return []


class XAIAdapter(OpenAIAdapter):
    """xAI Grok adapter (OpenAI-compatible)."""

    family = ProviderFamily.XAI
    default_model = "grok-3-mini"
    api_url = "https://api.x.ai/v1/chat/completions"
    pricing = {
        "grok-3-mini": {"input": 0.30, "output": 0.50},
        "grok-3": {"input": 3.00, "output": 15.00},
        "grok-4": {"input": 3.00, "output": 15.00},
    }


class PerplexityAdapter(OpenAIAdapter):
    """Perplexity Sonar adapter with native citations."""

    family = ProviderFamily.PERPLEXITY
    default_model = "sonar"
    api_url = "https://api.perplexity.ai/chat/completions"
    pricing = {
        "sonar": {"input": 1.00, "output": 1.00},
        "sonar-pro": {"input": 3.00, "output": 15.00},
    }

    def _json_payload(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float
    ) -> dict[str, Any]:
        payload = super()._json_payload(system_prompt, user_prompt, schema, temperature)
        payload["response_format"] = {"type": "json_schema", "json_schema": {"schema": schema}}
        return payload

    def _citations(self, data: dict[str, Any]) -> list[str]:
        citations = data.get("citations")
        if citations:
            return [c for c in citations if isinstance(c, str)]
        return [r["url"] for r in data.get("search_results") or [] if isinstance(r, dict) and r.get("url")]


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API adapter. Structured output uses a forced tool call."""

    family = ProviderFamily.ANTHROPIC
    default_model = "claude-3-5-haiku-latest"
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"
    tool_name = "record_analysis"
    pricing = {
        "claude-3-5-haiku-latest": {"input": 0.80, "output": 4.00},
        "claude-sonnet-4-0": {"input": 3.00, "output": 15.00},
        "claude-opus-4-0": {"input": 15.00, "output": 75.00},
    }

    def _url(self) -> str:
        return self.api_url

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.credential,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _answer_payload(self, prompt_text: str, temperature: float) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt_text}],
        }

    def _json_payload(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "tools": [
                {
                    "name": self.tool_name,
                    "description": "Record the structured analysis of the response.",
                    "input_schema": schema,
                }
            ],
            "tool_choice": {"type": "tool", "name": self.tool_name},
        }

    def _parse_answer(self, data: dict[str, Any]) -> ProviderResult:
        text = "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")
        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        return ProviderResult(
            text=text,
            model_version=data.get("model", self.model),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=_calc_cost(self.pricing, self.model, input_tokens, output_tokens),
        )

    def _parse_json(self, data: dict[str, Any]) -> dict[str, Any]:
        for block in data["content"]:
            if block.get("type") == "tool_use" and isinstance(block.get("input"), dict):
                return block["input"]
        # Fall back to a JSON object in plain text blocks
        return parse_json_object(self._parse_answer(data).text)


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    family = ProviderFamily.GOOGLE
    default_model = "gemini-2.0-flash"
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    pricing = {
        "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
        "gemini-2.5-flash": {"input": 0.15, "output": 0.60},
        "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    }

    def _url(self) -> str:
        return self.api_url_template.format(model=self.model)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _params(self) -> dict[str, str]:
        return {"key": self.config.credential}

    def _answer_payload(self, prompt_text: str, temperature: float) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt_text}]}],
            "generationConfig": {"temperature": temperature},
        }

    def _json_payload(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any], temperature: float
    ) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": "application/json",
                "responseJsonSchema": schema,
            },
        }

    def _parse_answer(self, data: dict[str, Any]) -> ProviderResult:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise ProviderError(ProviderErrorKind.PROVIDER_ERROR, f"Gemini returned no answer ({reason})")

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderError(ProviderErrorKind.PROVIDER_ERROR, "Gemini blocked the answer (SAFETY)")

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata") or {}
        input_tokens = usage.get("promptTokenCount", 0)
        output_tokens = usage.get("candidatesTokenCount", 0)

        grounding = candidate.get("groundingMetadata") or {}
        cited = [
            chunk["web"]["uri"]
            for chunk in grounding.get("groundingChunks") or []
            if isinstance(chunk.get("web"), dict) and chunk["web"].get("uri")
        ]

        return ProviderResult(
            text=text,
            model_version=data.get("modelVersion", self.model),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=_calc_cost(self.pricing, self.model, input_tokens, output_tokens),
            cited_urls=cited,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderFamily, type[BaseProviderAdapter]] = {
    ProviderFamily.OPENAI: OpenAIAdapter,
    ProviderFamily.ANTHROPIC: AnthropicAdapter,
    ProviderFamily.GOOGLE: GeminiAdapter,
    ProviderFamily.XAI: XAIAdapter,
    ProviderFamily.PERPLEXITY: PerplexityAdapter,
}


def build_adapter(config: ProviderSettings, timeout: float = 60.0) -> BaseProviderAdapter:
    """Factory: resolve the adapter class for a provider configuration."""
    cls = ADAPTER_REGISTRY.get(config.family)
    if cls is None:
        raise ValueError(f"No adapter registered for provider family: {config.family}")
    return cls(config, timeout=timeout)
