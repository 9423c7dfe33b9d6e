"""
OpenAI Provider — chat completions over REST.
"""

from __future__ import annotations

from typing import Optional

from ragebaiter.llm.rest import RestProvider

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIProvider(RestProvider):
    name = "openai"

    async def generate(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = True,
    ) -> str:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})

        body = {
            "model": self._model or DEFAULT_MODEL,
            "temperature": temperature,
            "messages": messages,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        payload = await self._post_json(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            body=body,
        )
        payload = payload if isinstance(payload, dict) else {}

        usage = payload.get("usage") or {}
        self._log_usage(usage.get("prompt_tokens") or 0, usage.get("completion_tokens") or 0)

        choices = payload.get("choices") or [{}]
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""
