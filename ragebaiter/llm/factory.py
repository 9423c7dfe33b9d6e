"""
LLM Provider — factory.
"""

from __future__ import annotations

from typing import Optional

import httpx

from ragebaiter.llm import LLMProvider

PROVIDERS = ("openai", "anthropic", "google")

# Phase 2 runs on the cheaper flash tier when Gemini is selected
DEFAULT_GOOGLE_PHASE2_MODEL = "gemini-2.0-flash"


def get_provider(
    provider_name: str = "google",
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> LLMProvider:
    """Return the named LLM provider bound to api_key.

    client is shared by the REST providers; the Gemini SDK manages its own.
    """
    if provider_name in ("google", "gemini"):
        from ragebaiter.llm.gemini import GeminiProvider
        return GeminiProvider(api_key=api_key, model=model)
    elif provider_name == "openai":
        from ragebaiter.llm.openai import OpenAIProvider
        return OpenAIProvider(api_key=api_key, model=model, client=client)
    elif provider_name == "anthropic":
        from ragebaiter.llm.anthropic import AnthropicProvider
        return AnthropicProvider(api_key=api_key, model=model, client=client)
    else:
        raise ValueError(f"Unknown LLM provider: {provider_name}")
