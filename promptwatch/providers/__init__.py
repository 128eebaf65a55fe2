"""Language-model provider adapters.

Usage:
    adapter = build_adapter(settings_snapshot, timeout=60)
    result = await adapter.invoke("Which VPN tools do you recommend?")
    if result.error:
        ...  # result.error.kind in auth / rate_limit / timeout / provider_error / unknown
"""

from promptwatch.providers.adapters import ADAPTER_REGISTRY, BaseProviderAdapter, build_adapter
from promptwatch.providers.types import ProviderFamily, ProviderResult, ProviderSettings


async def invoke(config: ProviderSettings, prompt_text: str, timeout: float = 60.0) -> ProviderResult:
    """One-shot call for callers that do not keep an adapter around."""
    return await build_adapter(config, timeout=timeout).invoke(prompt_text)


__all__ = [
    "ADAPTER_REGISTRY",
    "BaseProviderAdapter",
    "ProviderFamily",
    "ProviderResult",
    "ProviderSettings",
    "build_adapter",
    "invoke",
]
