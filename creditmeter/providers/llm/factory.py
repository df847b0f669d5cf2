from __future__ import annotations

from creditmeter.core.config import get_settings
from creditmeter.core.errors import ProviderConfigError
from creditmeter.providers.llm.base import LLMProvider
from creditmeter.providers.llm.fake import FakeLLMProvider
from creditmeter.providers.llm.gemini import GeminiProvider


_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    # One provider per process so the HTTP client pool is shared across calls.
    global _provider
    if _provider is not None:
        return _provider
    provider = (get_settings().llm_provider or "gemini").lower()
    if provider == "fake":
        _provider = FakeLLMProvider()
    elif provider == "gemini":
        _provider = GeminiProvider()
    else:
        raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
    return _provider


def reset_llm_provider() -> None:
    # Drop the cached provider after settings change in tests.
    global _provider
    _provider = None
