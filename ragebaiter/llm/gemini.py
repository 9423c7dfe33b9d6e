"""
Gemini Provider — Google Gemini API implementation.

Uses the google.genai SDK. Client is lazily initialized:
app loads without an API key and only fails on actual LLM call.
Sampling is pinned (temperature 0, top_p 0, top_k 1) so identical
prompts produce stable output.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from google import genai
from google.genai import types

from ragebaiter.llm import LLMProvider

logger = logging.getLogger("ragebaiter.llm.gemini")

DEFAULT_MODEL = "gemini-2.5-flash"


class GeminiProvider(LLMProvider):
    """Google Gemini LLM provider."""

    name = "google"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self._api_key = (api_key or "").strip()
        self._model = model or DEFAULT_MODEL
        self._client: Optional[genai.Client] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise RuntimeError(
                    "GEMINI_API_KEY not set. Get one from "
                    "https://aistudio.google.com/apikey"
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = True,
    ) -> str:
        client = self._get_client()

        config = types.GenerateContentConfig(
            temperature=temperature,
            top_p=0,
            top_k=1,
            system_instruction=system_instruction,
        )
        if json_mode:
            config.response_mime_type = "application/json"

        started = time.monotonic()
        response = await client.aio.models.generate_content(
            model=self._model,
            contents=prompt,
            config=config,
        )

        usage = response.usage_metadata
        logger.info(
            "Gemini request complete",
            extra={
                "provider": self.name,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "tokens_total": getattr(usage, "total_token_count", None) or 0,
                "prompt_tokens": getattr(usage, "prompt_token_count", None) or 0,
                "completion_tokens": getattr(usage, "candidates_token_count", None) or 0,
            },
        )
        return (response.text or "").strip()
