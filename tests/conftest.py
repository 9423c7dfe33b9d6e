"""
Shared test doubles: a manual millisecond clock, a recording sleep, and
a scripted LLM provider.
"""

from __future__ import annotations

import json

import pytest

from ragebaiter.llm import LLMProvider


class FakeClock:
    """Manual millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000):
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, ms: float) -> None:
        self.t += ms


class RecordingSleep:
    """Async sleep that records requested seconds and optionally moves a clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds * 1000)


class ScriptedProvider(LLMProvider):
    """Returns (or raises) the scripted items in order; repeats the last one."""

    def __init__(self, *script, name: str = "google", has_key: bool = True):
        self.script = list(script)
        self.name = name
        self._has_key = has_key
        self.prompts: list[str] = []
        self.system_instructions: list = []

    @property
    def has_credentials(self) -> bool:
        return self._has_key

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt, system_instruction=None, temperature=0.0, json_mode=True):
        self.prompts.append(prompt)
        self.system_instructions.append(system_instruction)
        item = self.script[min(len(self.prompts), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


PHASE1_PAYLOAD = {
    "tweet_vector": {"social": 0.2, "economic": 0.1, "populist": -0.1},
    "fallacies": ["False Dilemma"],
    "topic": "topic-3",
    "confidence": 0.73,
}

PHASE2_PAYLOAD = {
    "counterArgument": "Tax rates and business survival are not a binary.",
    "logicFailure": "False Dilemma",
    "claim": "Small businesses will die unless taxes are cut now.",
    "mechanism": "Presents two options as the only ones available.",
    "dataCheck": "Check small-business failure rates across tax regimes.",
    "socraticChallenge": "What other factors drive small-business closures?",
}


def phase1_json(**overrides) -> str:
    return json.dumps({**PHASE1_PAYLOAD, **overrides})


def phase2_json(**overrides) -> str:
    return json.dumps({**PHASE2_PAYLOAD, **overrides})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
