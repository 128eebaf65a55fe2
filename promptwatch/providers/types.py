"""Types shared by the provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from promptwatch.execution.errors import ProviderError


class ProviderFamily(str, Enum):
    """Supported model backends. Request shaping is keyed by family."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    XAI = "xai"
    PERPLEXITY = "perplexity"


@dataclass(frozen=True)
class ProviderSettings:
    """Read-only snapshot of a provider configuration with its credential decrypted."""

    id: int
    business_id: int
    platform_id: str
    family: ProviderFamily
    model: str
    credential: str
    is_primary: bool = False
    is_active: bool = True
    budget_limit: float | None = None

    def __repr__(self) -> str:
        # keep credentials out of logs and tracebacks
        return (
            f"ProviderSettings(id={self.id}, platform_id={self.platform_id!r}, "
            f"family={self.family.value!r}, model={self.model!r}, is_primary={self.is_primary})"
        )


@dataclass
class ProviderResult:
    """Outcome of one provider call: either non-empty text or a classified error."""

    text: str = ""
    error: ProviderError | None = None
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0
    cited_urls: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)
