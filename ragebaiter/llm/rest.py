"""
REST Provider Base — shared httpx plumbing for chat-completion style APIs.

Non-2xx answers raise UpstreamHTTPError carrying the status and any
Retry-After hint; transport failures propagate as httpx exceptions.
Both are classified by ragebaiter.errors.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from ragebaiter.errors import UpstreamHTTPError, parse_retry_after_ms
from ragebaiter.llm import LLMProvider

logger = logging.getLogger("ragebaiter.llm")


class RestProvider(LLMProvider):
    """Base for providers spoken to over plain HTTPS + JSON."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = (api_key or "").strip()
        self._model = model
        self._client = client

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Deadline is enforced by the analyzer; no transport timeout here.
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def _post_json(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Any:
        started = time.monotonic()
        response = await self._get_client().post(url, headers=headers, json=body)

        if response.is_error:
            raise UpstreamHTTPError(
                status=response.status_code,
                retry_after_ms=parse_retry_after_ms(response.headers.get("retry-after")),
                body=response.text[:300],
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        logger.debug(
            "REST request complete",
            extra={
                "provider": self.name,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "status_code": response.status_code,
            },
        )
        return payload

    def _log_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        logger.info(
            f"{self.name} usage",
            extra={
                "provider": self.name,
                "tokens_total": prompt_tokens + completion_tokens,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
            },
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
