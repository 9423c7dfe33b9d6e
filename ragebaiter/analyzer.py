"""
Upstream Analyzer Adapter

Wraps one provider call with everything around it:

  1. Precondition gate: blank text or missing credentials → None
     (credentials miss logs one warning, never retries)
  2. Deterministic truncation to a fixed character budget
  3. Provider-specific prompt with few-shot calibration
  4. Rate-limit slot from the provider's sliding window
  5. Call under a deadline; failures classified into Ok / Retry / Fatal
  6. Up to 3 attempts, backoff = Retry-After or base * 2^(attempt-1)
  7. Strict decode; schema-invalid output is terminal

The adapter never raises. None means "analysis unavailable".

Usage:
    analyzer = Phase1Analyzer(provider=get_provider("google", api_key))
    analysis = await analyzer("tweet-1", "Either we cut taxes or we all starve.")
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import zlib
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from ragebaiter.config import settings
from ragebaiter.decoding import decode_phase1_text, decode_phase2_text
from ragebaiter.errors import Fatal, Ok, Outcome, backoff_ms, describe, to_outcome
from ragebaiter.llm import LLMProvider
from ragebaiter.llm.factory import DEFAULT_GOOGLE_PHASE2_MODEL, PROVIDERS, get_provider
from ragebaiter.models import ContentVector, Phase1Analysis, Phase2Analysis, Phase2Context
from ragebaiter.prompts import (
    PHASE2_SYSTEM_INSTRUCTION,
    build_phase1_prompt,
    build_phase2_prompt,
    truncate_deterministically,
)
from ragebaiter.rate_limit import SlidingWindowRateLimiter, sleep_seconds

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
PHASE1_BASE_BACKOFF_MS = 200
PHASE2_BASE_BACKOFF_MS = 250
BYOK_PROVIDER_CACHE_SIZE = 64


class UpstreamAnalyzer(Generic[T]):
    """Retry/backoff/rate-limit shell around a single provider call."""

    name = "upstream"
    base_backoff_ms = PHASE1_BASE_BACKOFF_MS
    system_instruction: Optional[str] = None

    def __init__(
        self,
        timeout_ms: int,
        max_input_chars: int = settings.MAX_INPUT_CHARS,
        max_attempts: int = MAX_ATTEMPTS,
        base_backoff_ms: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = sleep_seconds,
    ):
        self.timeout_ms = timeout_ms
        self.max_input_chars = max_input_chars
        self.max_attempts = max_attempts
        if base_backoff_ms is not None:
            self.base_backoff_ms = base_backoff_ms
        self._sleep = sleep

    # --- hooks -------------------------------------------------

    def _resolve_provider(self, key: str, context: Any) -> Optional[LLMProvider]:
        raise NotImplementedError

    def _limiter_for(self, provider: LLMProvider) -> SlidingWindowRateLimiter:
        raise NotImplementedError

    def _build_prompt(self, text: str, context: Any) -> Optional[str]:
        raise NotImplementedError

    def _decode(self, raw: str) -> Optional[T]:
        raise NotImplementedError

    # --- pipeline ----------------------------------------------

    async def __call__(self, key: str, text: str, context: Any = None) -> Optional[T]:
        trimmed = (text or "").strip()
        if not trimmed:
            return None

        provider = self._resolve_provider(key, context)
        if provider is None or not provider.has_credentials:
            logger.warning(
                f"[{self.name}] API key missing, skipping analyzer",
                extra={"cache_key": key, "provider": getattr(provider, "name", None)},
            )
            return None

        prompt = self._build_prompt(
            truncate_deterministically(trimmed, self.max_input_chars), context,
        )
        if prompt is None:
            return None
        limiter = self._limiter_for(provider)

        for attempt in range(1, self.max_attempts + 1):
            await limiter.acquire()
            outcome = await self._attempt(provider, prompt)

            if isinstance(outcome, Ok):
                result = self._decode(outcome.value)
                if result is None:
                    logger.warning(
                        f"[{self.name}] schema-invalid response, returning None",
                        extra={"cache_key": key, "provider": provider.name, "attempt": attempt},
                    )
                return result

            if isinstance(outcome, Fatal) or attempt >= self.max_attempts:
                logger.warning(
                    f"[{self.name}] failed after {attempt} attempt(s), returning None",
                    extra={
                        "cache_key": key,
                        "provider": provider.name,
                        "attempt": attempt,
                        "error_type": describe(outcome.reason),
                    },
                )
                return None

            delay = backoff_ms(attempt, outcome.reason, self.base_backoff_ms)
            logger.warning(
                f"[{self.name}] retry attempt={attempt + 1} backoff_ms={delay}",
                extra={
                    "cache_key": key,
                    "provider": provider.name,
                    "attempt": attempt + 1,
                    "backoff_ms": delay,
                    "error_type": describe(outcome.reason),
                },
            )
            await self._sleep(delay / 1000)

        return None

    async def _attempt(self, provider: LLMProvider, prompt: str) -> Outcome:
        """One provider call under the deadline, folded into a variant."""
        try:
            raw = await asyncio.wait_for(
                provider.generate(
                    prompt,
                    system_instruction=self.system_instruction,
                    temperature=0.0,
                    json_mode=True,
                ),
                timeout=self.timeout_ms / 1000,
            )
        except Exception as exc:
            outcome = to_outcome(exc)
            if isinstance(outcome, Fatal) and isinstance(outcome.reason, Exception):
                logger.debug(f"[{self.name}] terminal error", exc_info=True)
            return outcome
        return Ok(raw)


# ============================================================
# PHASE 1: PRIMARY (CONTENT-LEVEL) ANALYZER
# ============================================================

class Phase1Analyzer(UpstreamAnalyzer[Phase1Analysis]):
    """Lightweight analyzer producing the content vector, fallacies and topic."""

    name = "phase1-analyzer"
    base_backoff_ms = PHASE1_BASE_BACKOFF_MS

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        timeout_ms: int = settings.PHASE1_TIMEOUT_MS,
        **kwargs,
    ):
        super().__init__(timeout_ms=timeout_ms, **kwargs)
        self._provider = provider or get_provider(
            "google", api_key=settings.GEMINI_API_KEY, model=settings.PHASE1_MODEL,
        )
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(settings.UPSTREAM_RPS)

    def _resolve_provider(self, key: str, context: Any) -> Optional[LLMProvider]:
        return self._provider

    def _limiter_for(self, provider: LLMProvider) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    def _build_prompt(self, text: str, context: Any) -> str:
        return build_phase1_prompt(text)

    def _decode(self, raw: str) -> Optional[Phase1Analysis]:
        return decode_phase1_text(raw)


# ============================================================
# PHASE 2: SECONDARY (PER-USER) ANALYZER
# ============================================================

ProviderFactory = Callable[[str, str], LLMProvider]


class Phase2Analyzer(UpstreamAnalyzer[Phase2Analysis]):
    """
    Heavier analyzer producing the rebuttal. The provider is chosen per
    call (context.provider or the configured default), and a caller's own
    key (BYOK) takes precedence over the service key for that provider.
    """

    name = "phase2-analyzer"
    base_backoff_ms = PHASE2_BASE_BACKOFF_MS
    system_instruction = PHASE2_SYSTEM_INSTRUCTION

    def __init__(
        self,
        default_provider: str = settings.PHASE2_PROVIDER,
        api_keys: Optional[dict[str, str]] = None,
        provider_factory: Optional[ProviderFactory] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        requests_per_second: int = settings.UPSTREAM_RPS,
        timeout_ms: int = settings.PHASE2_TIMEOUT_MS,
        byok_cache_size: int = BYOK_PROVIDER_CACHE_SIZE,
        **kwargs,
    ):
        super().__init__(timeout_ms=timeout_ms, **kwargs)
        if default_provider not in PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {default_provider}")
        self.default_provider = default_provider
        self._api_keys = api_keys if api_keys is not None else {
            "openai": settings.OPENAI_API_KEY,
            "anthropic": settings.ANTHROPIC_API_KEY,
            "google": settings.GEMINI_API_KEY,
        }
        self._provider_factory = provider_factory or self._default_factory
        self._shared_limiter = rate_limiter
        self._requests_per_second = requests_per_second
        self._limiters: dict[str, SlidingWindowRateLimiter] = {}
        self._service_providers: dict[str, LLMProvider] = {}
        # (provider, sha256(key)) -> provider, so a BYOK key reuses its SDK client
        self._byok_providers: OrderedDict[tuple[str, str], LLMProvider] = OrderedDict()
        self._byok_cache_size = byok_cache_size
        self._http_client: Optional[httpx.AsyncClient] = None

    def _default_factory(self, provider_name: str, api_key: str) -> LLMProvider:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=None)
        model = DEFAULT_GOOGLE_PHASE2_MODEL if provider_name == "google" else None
        return get_provider(provider_name, api_key=api_key, model=model, client=self._http_client)

    def _resolve_provider(self, key: str, context: Any) -> Optional[LLMProvider]:
        provider_name = getattr(context, "provider", None) or self.default_provider
        if provider_name not in PROVIDERS:
            logger.warning(
                f"[{self.name}] unknown provider {provider_name!r}",
                extra={"cache_key": key, "provider": provider_name},
            )
            return None

        byok_key = (getattr(context, "api_key", None) or "").strip()
        if byok_key:
            return self._byok_provider(provider_name, byok_key)

        if provider_name not in self._service_providers:
            self._service_providers[provider_name] = self._provider_factory(
                provider_name, (self._api_keys.get(provider_name) or "").strip(),
            )
        return self._service_providers[provider_name]

    def _byok_provider(self, provider_name: str, api_key: str) -> LLMProvider:
        cache_key = (provider_name, hashlib.sha256(api_key.encode()).hexdigest())
        provider = self._byok_providers.get(cache_key)
        if provider is not None:
            self._byok_providers.move_to_end(cache_key)
            return provider

        provider = self._provider_factory(provider_name, api_key)
        self._byok_providers[cache_key] = provider
        while len(self._byok_providers) > self._byok_cache_size:
            self._byok_providers.popitem(last=False)
        return provider

    def _limiter_for(self, provider: LLMProvider) -> SlidingWindowRateLimiter:
        if self._shared_limiter is not None:
            return self._shared_limiter
        if provider.name not in self._limiters:
            self._limiters[provider.name] = SlidingWindowRateLimiter(self._requests_per_second)
        return self._limiters[provider.name]

    def _build_prompt(self, text: str, context: Any) -> Optional[str]:
        if not isinstance(context, Phase2Context):
            logger.warning(
                f"[{self.name}] missing phase 1 context, skipping analyzer",
                extra={"error_type": type(context).__name__},
            )
            return None
        return build_phase2_prompt(text, context.phase1)

    def _decode(self, raw: str) -> Optional[Phase2Analysis]:
        return decode_phase2_text(raw)

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


# ============================================================
# DETERMINISTIC OFFLINE ANALYZER
# ============================================================

FALLACY_CATALOG = ("Strawman", "Ad Hominem", "False Dilemma", "Appeal to Authority")


def _normalize_to_axis(value: int) -> float:
    return round(((value % 2001) - 1000) / 1000, 3)


class DeterministicAnalyzer:
    """
    Hash-based stand-in for the primary analyzer. Same (key, text) always
    yields the same analysis; no network, no credentials.
    """

    name = "deterministic-analyzer"

    async def __call__(self, key: str, text: str, context: Any = None) -> Optional[Phase1Analysis]:
        if not (text or "").strip():
            return None

        digest = zlib.crc32(f"{key}:{text}".encode("utf-8"))
        return Phase1Analysis(
            vector=ContentVector(
                social=_normalize_to_axis(digest),
                economic=_normalize_to_axis(digest * 7),
                populist=_normalize_to_axis(digest * 13),
            ),
            fallacies=(FALLACY_CATALOG[digest % len(FALLACY_CATALOG)],),
            topic=f"deterministic-topic-{digest % 10}",
            confidence=round(0.5 + (digest % 50) / 100, 2),
        )
