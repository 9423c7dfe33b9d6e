"""
Analysis Pipeline — the request path through quota, cache and decision.

    analyze_phase1:    daily cap → phase 1 cache (→ analyzer on miss)
    analyze_phase2:    identity → monthly quota (skipped for BYOK) → per-user phase 2 cache
    should_intervene:  viewer profile → analyze_phase1 → that viewer's DecisionEngine
    record_feedback:   stored vector drifts toward or away from a post

Each viewer gets their own DecisionEngine, so one viewer's intervention
never puts another viewer in cooldown. Engines are created on first use
and the least recently used are dropped past max_engines; anonymous
callers share one engine.

Nothing here raises for expected outcomes. A PipelineResult carries either
the analysis, a quota rejection, an error code, or none of them (analysis
unavailable).
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from ragebaiter.cache import AnalysisCacheService
from ragebaiter.decision import Decision, DecisionConfig, DecisionEngine, UserProfile
from ragebaiter.models import AnalyzeResult, ContentVector, Phase1Analysis, Phase2Context
from ragebaiter.profiles import DriftResult, InMemoryProfileStore, ProfileStore, apply_feedback_drift
from ragebaiter.quota import QuotaDecision, QuotaService

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENGINES = 10_000

UNAUTHORIZED = "UNAUTHORIZED"
PROFILE_REQUIRED = "PROFILE_REQUIRED"
PROFILE_UNAVAILABLE = "PROFILE_UNAVAILABLE"


@dataclass
class PipelineResult:
    analysis: Optional[AnalyzeResult] = None
    rejection: Optional[QuotaDecision] = None
    decision: Optional[Decision] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.analysis is not None and self.rejection is None and self.error is None


def phase2_cache_key(tweet_id: str, user_id: str) -> str:
    return f"{user_id}:{tweet_id}"


class AnalysisPipeline:
    def __init__(
        self,
        phase1_cache: AnalysisCacheService,
        phase2_cache: AnalysisCacheService,
        engine_factory: Callable[[], DecisionEngine],
        monthly_quota: QuotaService,
        daily_quota: QuotaService,
        profiles: Optional[ProfileStore] = None,
        max_engines: int = DEFAULT_MAX_ENGINES,
    ):
        if max_engines < 1:
            raise ValueError("max_engines must be >= 1")
        self.phase1_cache = phase1_cache
        self.phase2_cache = phase2_cache
        self.engine_factory = engine_factory
        self.monthly_quota = monthly_quota
        self.daily_quota = daily_quota
        self.profiles = profiles if profiles is not None else InMemoryProfileStore()
        self.max_engines = max_engines
        self._engines: OrderedDict[Optional[str], DecisionEngine] = OrderedDict()
        self._engines_lock = threading.Lock()

    def engine_for(self, user_id: Optional[str]) -> DecisionEngine:
        """The viewer's engine, created on first use. None is the anonymous viewer."""
        with self._engines_lock:
            engine = self._engines.get(user_id)
            if engine is not None:
                self._engines.move_to_end(user_id)
                return engine

            engine = self.engine_factory()
            self._engines[user_id] = engine
            while len(self._engines) > self.max_engines:
                self._engines.popitem(last=False)
            return engine

    @property
    def engine_count(self) -> int:
        return len(self._engines)

    async def analyze_phase1(
        self, tweet_id: str, text: str, user_id: Optional[str] = None,
    ) -> PipelineResult:
        gate = await self.daily_quota.check(user_id)
        if not gate.allowed:
            return PipelineResult(rejection=gate)

        analysis, started = await self.phase1_cache.analyze_tracked(tweet_id, text)
        if analysis is not None and started and user_id:
            # One upstream call is one unit, charged to whoever started it.
            await self.daily_quota.consume(user_id)
        return PipelineResult(analysis=analysis)

    async def analyze_phase2(
        self,
        tweet_id: str,
        text: str,
        phase1: Phase1Analysis,
        user_id: Optional[str] = None,
        api_key: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> PipelineResult:
        if not user_id:
            return PipelineResult(error=UNAUTHORIZED)

        byok_key = (api_key or "").strip() or None
        gate = await self.monthly_quota.consume(user_id, byok=byok_key is not None)
        if not gate.allowed:
            return PipelineResult(rejection=gate)

        context = Phase2Context(phase1=phase1, api_key=byok_key, provider=provider)
        analysis = await self.phase2_cache.analyze(
            phase2_cache_key(tweet_id, user_id), text, context,
        )
        return PipelineResult(analysis=analysis)

    async def load_profile(
        self, user_id: Optional[str], decision_config: Optional[DecisionConfig] = None,
    ) -> Optional[UserProfile]:
        """Stored vector for user_id as a UserProfile, or None if there is none."""
        if not user_id:
            return None
        vector = await self.profiles.get_vector(user_id)
        if vector is None:
            return None
        return UserProfile(user_vector=vector, decision_config=decision_config or DecisionConfig())

    async def should_intervene(
        self,
        tweet_id: str,
        text: str,
        profile: Optional[UserProfile] = None,
        user_id: Optional[str] = None,
        decision_config: Optional[DecisionConfig] = None,
    ) -> PipelineResult:
        """
        Analyze, then decide for this viewer. Without an explicit profile
        the viewer's stored vector is used; with neither, nothing is
        analyzed and the result carries PROFILE_REQUIRED.
        """
        if profile is None:
            try:
                profile = await self.load_profile(user_id, decision_config)
            except Exception as e:
                logger.warning(
                    f"Profile lookup failed: {e}",
                    extra={"user_id": user_id, "error_type": type(e).__name__},
                )
                return PipelineResult(error=PROFILE_UNAVAILABLE)
            if profile is None:
                return PipelineResult(error=PROFILE_REQUIRED)

        outcome = await self.analyze_phase1(tweet_id, text, user_id)
        if not outcome.ok:
            return outcome

        outcome.decision = self.engine_for(user_id).evaluate_tweet(outcome.analysis.result, profile)
        logger.info(
            outcome.decision.log.tree,
            extra={
                "tweet_id": tweet_id,
                "user_id": user_id,
                "decision": outcome.decision.level,
                "action": outcome.decision.action,
            },
        )
        return outcome

    async def record_feedback(
        self, user_id: str, tweet_vector: ContentVector, feedback_type: str,
    ) -> Optional[DriftResult]:
        """Drift the stored vector. None when the user has no stored vector."""
        current = await self.profiles.get_vector(user_id)
        if current is None:
            return None

        drift = apply_feedback_drift(current, tweet_vector, feedback_type)
        if drift.after != drift.before:
            await self.profiles.set_vector(user_id, drift.after)
        logger.info(
            f"Feedback recorded: {feedback_type}",
            extra={"user_id": user_id, "action": feedback_type},
        )
        return drift
