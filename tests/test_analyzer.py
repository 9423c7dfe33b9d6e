"""
Upstream Analyzer Tests

Covers the adapter around a single provider call:
  1. Precondition gate (blank text, missing credentials)
  2. Retry policy and backoff schedule
  3. Strict decoding and numeric clamping
  4. Deterministic truncation
  5. Phase 2 provider selection and BYOK
  6. Deterministic offline analyzer
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from conftest import RecordingSleep, ScriptedProvider, phase1_json, phase2_json
from ragebaiter.analyzer import DeterministicAnalyzer, Phase1Analyzer, Phase2Analyzer
from ragebaiter.errors import UpstreamHTTPError
from ragebaiter.llm.anthropic import AnthropicProvider
from ragebaiter.llm.openai import OpenAIProvider
from ragebaiter.models import ContentVector, Phase1Analysis, Phase2Context
from ragebaiter.rate_limit import SlidingWindowRateLimiter


def _limiter(clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_requests=100, now=clock, sleep=RecordingSleep())


def _phase1(provider, clock, sleep, **kwargs) -> Phase1Analyzer:
    return Phase1Analyzer(provider=provider, rate_limiter=_limiter(clock), sleep=sleep, **kwargs)


PHASE1 = Phase1Analysis(
    vector=ContentVector(0.2, 0.1, -0.1), fallacies=("False Dilemma",), topic="Tax", confidence=0.8,
)


# ============================================================
# PRECONDITIONS
# ============================================================

class TestPreconditions:

    @pytest.mark.asyncio
    async def test_blank_text_skips_upstream(self, clock, sleep):
        provider = ScriptedProvider(phase1_json())
        analyzer = _phase1(provider, clock, sleep)
        assert await analyzer("t1", "   \n\t ") is None
        assert await analyzer("t1", "") is None
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_missing_credentials_warns_once(self, clock, sleep, caplog):
        provider = ScriptedProvider(phase1_json(), has_key=False)
        analyzer = _phase1(provider, clock, sleep)

        with caplog.at_level(logging.WARNING, logger="ragebaiter"):
            assert await analyzer("t1", "some text") is None

        assert provider.calls == 0
        assert sleep.delays == []
        warnings = [r for r in caplog.records if "API key missing" in r.getMessage()]
        assert len(warnings) == 1


# ============================================================
# RETRY POLICY
# ============================================================

class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_phase1_retry_bound_and_backoff(self, clock, sleep):
        provider = ScriptedProvider(UpstreamHTTPError(503))
        analyzer = _phase1(provider, clock, sleep)

        assert await analyzer("t1", "text") is None
        assert provider.calls == 3
        assert sleep.delays == [0.2, 0.4]

    @pytest.mark.asyncio
    async def test_phase2_uses_larger_base(self, clock, sleep):
        provider = ScriptedProvider(UpstreamHTTPError(500))
        analyzer = Phase2Analyzer(
            provider_factory=lambda name, key: provider,
            api_keys={"google": "k"},
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )

        assert await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1)) is None
        assert provider.calls == 3
        assert sleep.delays == [0.25, 0.5]

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(self, clock, sleep):
        provider = ScriptedProvider(UpstreamHTTPError(429, retry_after_ms=1500), phase1_json())
        analyzer = _phase1(provider, clock, sleep)

        result = await analyzer("t1", "text")
        assert result is not None
        assert provider.calls == 2
        assert sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, clock, sleep):
        provider = ScriptedProvider(UpstreamHTTPError(400))
        analyzer = _phase1(provider, clock, sleep)

        assert await analyzer("t1", "text") is None
        assert provider.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_network_error_retried_then_recovers(self, clock, sleep):
        provider = ScriptedProvider(httpx.ConnectError("refused"), phase1_json())
        analyzer = _phase1(provider, clock, sleep)

        assert await analyzer("t1", "text") is not None
        assert provider.calls == 2
        assert sleep.delays == [0.2]

    @pytest.mark.asyncio
    async def test_unclassified_exception_is_terminal(self, clock, sleep):
        provider = ScriptedProvider(RuntimeError("boom"))
        analyzer = _phase1(provider, clock, sleep)

        assert await analyzer("t1", "text") is None
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, clock, sleep):

        class SlowProvider(ScriptedProvider):
            async def generate(self, prompt, **kwargs):
                self.prompts.append(prompt)
                await asyncio.sleep(5)
                return phase1_json()

        provider = SlowProvider()
        analyzer = _phase1(provider, clock, sleep, timeout_ms=10)

        assert await analyzer("t1", "text") is None
        assert provider.calls == 3
        assert sleep.delays == [0.2, 0.4]

    @pytest.mark.asyncio
    async def test_each_attempt_takes_a_rate_limit_slot(self, clock, sleep):
        provider = ScriptedProvider(UpstreamHTTPError(502))
        limiter = SlidingWindowRateLimiter(max_requests=100, now=clock)
        analyzer = Phase1Analyzer(provider=provider, rate_limiter=limiter, sleep=sleep)

        await analyzer("t1", "text")
        assert limiter.in_window == 3


# ============================================================
# DECODING
# ============================================================

class TestDecoding:

    @pytest.mark.asyncio
    async def test_out_of_range_values_are_clamped(self, clock, sleep):
        provider = ScriptedProvider(phase1_json(
            tweet_vector={"social": 3.5, "economic": -2, "populist": 0.5},
            confidence=1.7,
        ))
        result = await _phase1(provider, clock, sleep)("t1", "text")

        assert result.vector == ContentVector(1.0, -1.0, 0.5)
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_fenced_json_is_extracted(self, clock, sleep):
        provider = ScriptedProvider("```json\n" + phase1_json() + "\n```")
        result = await _phase1(provider, clock, sleep)("t1", "text")
        assert result.topic == "topic-3"
        assert result.fallacies == ("False Dilemma",)

    @pytest.mark.asyncio
    async def test_wrong_field_type_is_terminal(self, clock, sleep):
        provider = ScriptedProvider(phase1_json(confidence="high"))
        result = await _phase1(provider, clock, sleep)("t1", "text")

        assert result is None
        assert provider.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_prose_response_is_none(self, clock, sleep):
        provider = ScriptedProvider("I cannot analyze this tweet.")
        assert await _phase1(provider, clock, sleep)("t1", "text") is None


# ============================================================
# TRUNCATION
# ============================================================

class TestTruncation:

    @pytest.mark.asyncio
    async def test_prompt_is_byte_identical_for_identical_input(self, clock, sleep):
        provider = ScriptedProvider(phase1_json())
        analyzer = _phase1(provider, clock, sleep, max_input_chars=50)
        text = "x" * 49 + "END-OF-BUDGET" + "y" * 500

        await analyzer("t1", text)
        await analyzer("t2", text)

        assert provider.prompts[0] == provider.prompts[1]
        assert "x" * 49 + "E" in provider.prompts[0]
        assert "END-OF-BUDGET" not in provider.prompts[0]
        assert "y" not in provider.prompts[0].split("Analyze this tweet text:")[1]


# ============================================================
# PHASE 2 PROVIDERS
# ============================================================

class TestPhase2Providers:

    @pytest.mark.asyncio
    async def test_openai_over_rest(self, clock, sleep):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={
                "choices": [{"message": {"content": phase2_json()}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        analyzer = Phase2Analyzer(
            default_provider="openai",
            api_keys={"openai": "sk-service"},
            provider_factory=lambda name, key: OpenAIProvider(api_key=key, client=client),
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )

        result = await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1))
        assert result.logic_failure == "False Dilemma"
        assert seen["url"].endswith("/v1/chat/completions")
        assert seen["auth"] == "Bearer sk-service"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_byok_key_overrides_service_key(self, clock, sleep):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers["x-api-key"]
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": phase2_json()}],
                "usage": {"input_tokens": 10, "output_tokens": 5},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        analyzer = Phase2Analyzer(
            api_keys={"anthropic": "service-key"},
            provider_factory=lambda name, key: AnthropicProvider(api_key=key, client=client),
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )

        context = Phase2Context(phase1=PHASE1, api_key="user-own-key", provider="anthropic")
        assert await analyzer("u:t1", "text", context) is not None
        assert seen["key"] == "user-own-key"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rest_429_carries_retry_after(self, clock, sleep):
        responses = iter([
            httpx.Response(429, headers={"retry-after": "2"}),
            httpx.Response(200, json={"choices": [{"message": {"content": phase2_json()}}]}),
        ])
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: next(responses)))
        analyzer = Phase2Analyzer(
            default_provider="openai",
            api_keys={"openai": "k"},
            provider_factory=lambda name, key: OpenAIProvider(api_key=key, client=client),
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )

        assert await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1)) is not None
        assert sleep.delays == [2.0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_rebuttal_field_is_none(self, clock, sleep):
        provider = ScriptedProvider(phase2_json(claim="   "))
        analyzer = Phase2Analyzer(
            provider_factory=lambda name, key: provider,
            api_keys={"google": "k"},
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )
        assert await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1)) is None
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_missing_service_key_without_byok(self, clock, sleep):
        analyzer = Phase2Analyzer(
            default_provider="openai",
            api_keys={},
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )
        assert await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1)) is None

    @pytest.mark.asyncio
    async def test_prompt_embeds_phase1_context(self, clock, sleep):
        provider = ScriptedProvider(phase2_json())
        analyzer = Phase2Analyzer(
            provider_factory=lambda name, key: provider,
            api_keys={"google": "k"},
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )
        await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1))

        assert "- fallacies: False Dilemma" in provider.prompts[0]
        assert "- topic: Tax" in provider.prompts[0]
        assert provider.system_instructions[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("context", [None, {"phase1": "not a context"}])
    async def test_wrong_context_is_none_not_raise(self, clock, sleep, context):
        provider = ScriptedProvider(phase2_json())
        analyzer = Phase2Analyzer(
            provider_factory=lambda name, key: provider,
            api_keys={"google": "k"},
            rate_limiter=_limiter(clock),
            sleep=sleep,
        )
        assert await analyzer("u:t1", "text", context) is None
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_byok_provider_reused_per_key(self, clock, sleep):
        built: list[tuple[str, str]] = []

        def factory(name, key):
            built.append((name, key))
            return ScriptedProvider(phase2_json(), name=name)

        analyzer = Phase2Analyzer(
            provider_factory=factory,
            api_keys={},
            rate_limiter=_limiter(clock),
            sleep=sleep,
            byok_cache_size=2,
        )

        for key in ("sk-aaaa", "sk-aaaa", "sk-bbbb", "sk-aaaa"):
            context = Phase2Context(phase1=PHASE1, api_key=key, provider="openai")
            assert await analyzer("u:t1", "text", context) is not None
        assert built == [("openai", "sk-aaaa"), ("openai", "sk-bbbb")]

        # A third key pushes out the least recently used one (sk-bbbb)
        for key in ("sk-cccc", "sk-bbbb"):
            await analyzer("u:t1", "text", Phase2Context(phase1=PHASE1, api_key=key, provider="openai"))
        assert built[2:] == [("openai", "sk-cccc"), ("openai", "sk-bbbb")]

    def test_unknown_default_provider_rejected(self):
        with pytest.raises(ValueError):
            Phase2Analyzer(default_provider="mistral")


# ============================================================
# DETERMINISTIC ANALYZER
# ============================================================

class TestDeterministicAnalyzer:

    @pytest.mark.asyncio
    async def test_same_input_same_output(self):
        analyzer = DeterministicAnalyzer()
        a = await analyzer("t1", "Some political text")
        b = await analyzer("t1", "Some political text")
        assert a == b

    @pytest.mark.asyncio
    async def test_values_in_range(self):
        analyzer = DeterministicAnalyzer()
        for i in range(20):
            result = await analyzer(f"t{i}", f"text number {i}")
            for axis in (result.vector.social, result.vector.economic, result.vector.populist):
                assert -1.0 <= axis <= 1.0
            assert 0.5 <= result.confidence <= 0.99
            assert len(result.fallacies) == 1
            assert result.topic.startswith("deterministic-topic-")

    @pytest.mark.asyncio
    async def test_blank_text_is_none(self):
        assert await DeterministicAnalyzer()("t1", "  ") is None
