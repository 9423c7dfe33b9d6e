"""
Anthropic Provider — messages API over REST.
"""

from __future__ import annotations

from typing import Optional

from ragebaiter.llm.rest import RestProvider

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"


class AnthropicProvider(RestProvider):
    name = "anthropic"

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = True,
    ) -> str:
        body = {
            "model": self._model or DEFAULT_MODEL,
            "max_tokens": 900,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_instruction:
            body["system"] = system_instruction

        payload = await self._post_json(
            ANTHROPIC_URL,
            headers={"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_VERSION},
            body=body,
        )
        payload = payload if isinstance(payload, dict) else {}

        usage = payload.get("usage") or {}
        self._log_usage(usage.get("input_tokens") or 0, usage.get("output_tokens") or 0)

        return "".join(
            block.get("text") or ""
            for block in payload.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
