"""
Decision Engine Tests

  1. Level banding (symmetry, echo-chamber, mild-bias, boundaries)
  2. Fallacy weighting and severity bands
  3. Cooldown gate
  4. Threshold overrides
  5. Trace log format
"""

from __future__ import annotations

import re
import threading

import pytest

from ragebaiter.decision import (
    DEFAULT_FALLACY_WEIGHT,
    DecisionConfig,
    DecisionEngine,
    DecisionThresholds,
    UserProfile,
    resolve_level,
    severity_band,
    weighted_fallacy_count,
    weighted_fallacy_score,
)
from ragebaiter.models import ContentVector, Phase1Analysis


def _analysis(vector, fallacies=(), topic="Policy", confidence=0.8) -> Phase1Analysis:
    return Phase1Analysis(
        vector=ContentVector(*vector), fallacies=tuple(fallacies), topic=topic, confidence=confidence,
    )


def _profile(vector=(0, 0, 0), **config) -> UserProfile:
    return UserProfile(user_vector=ContentVector(*vector), decision_config=DecisionConfig(**config))


@pytest.fixture
def engine(clock) -> DecisionEngine:
    return DecisionEngine(now=clock, cooldown_ms=30_000)


# ============================================================
# LEVEL BANDING
# ============================================================

class TestLevels:

    def test_identical_vectors_with_fallacy_is_critical(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((0.1, -0.3, 0.4), ["Strawman"], topic="Tax Policy"),
            _profile((0.1, -0.3, 0.4)),
        )
        assert decision.level == "critical"
        assert decision.should_intervene is True
        assert decision.distance == 0

    def test_opposite_vectors_are_none(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((1, 1, 1), ["Ad Hominem", "Whataboutism"]),
            _profile((-1, -1, -1)),
        )
        assert decision.level == "none"
        assert decision.should_intervene is False
        assert decision.distance > 0.4

    def test_echo_chamber_without_fallacies_is_low(self, engine):
        decision = engine.evaluate_tweet(_analysis((0.1, 0, 0)), _profile())
        assert decision.level == "low"
        assert decision.weighted_fallacy_score == 0
        assert decision.severity_band == "none"

    def test_mild_band_with_fallacies_is_medium(self, engine):
        mild = engine.evaluate_tweet(
            _analysis((0.3, 0, 0), ["Bandwagon", "Appeal to Authority"]), _profile(),
        )
        engine.reset_cooldown()
        severe = engine.evaluate_tweet(
            _analysis((0.3, 0, 0), ["Strawman", "Ad Hominem"]), _profile(),
        )

        assert mild.level == "medium"
        assert severe.level == "medium"
        assert severe.weighted_fallacy_score > mild.weighted_fallacy_score
        assert severe.severity_band == "high"

    def test_mild_band_without_fallacies_is_none(self, engine):
        assert engine.evaluate_tweet(_analysis((0.3, 0, 0)), _profile()).level == "none"

    @pytest.mark.parametrize("social,expected", [
        (0.2, "medium"),
        (0.4, "medium"),
        (0.401, "none"),
    ])
    def test_boundaries(self, engine, social, expected):
        decision = engine.evaluate_tweet(
            _analysis((social, 0, 0), ["Strawman", "Ad Hominem"]), _profile(),
        )
        assert decision.level == expected

    def test_resolve_level_table(self):
        defaults = DecisionThresholds()
        assert resolve_level(0.0, 1, defaults) == "critical"
        assert resolve_level(0.199, 1, defaults) == "critical"
        assert resolve_level(0.2, 0, defaults) == "low"
        assert resolve_level(0.201, 0, defaults) == "none"
        assert resolve_level(0.4, 3, defaults) == "medium"


# ============================================================
# WEIGHTING
# ============================================================

class TestWeighting:

    def test_known_and_unknown_weights(self):
        weights = {"Strawman": 0.9}
        assert weighted_fallacy_score(("Strawman", "Made Up Fallacy"), weights) == round(0.9 + DEFAULT_FALLACY_WEIGHT, 3)

    def test_label_whitespace_is_normalized(self):
        assert weighted_fallacy_score(("  Ad   Hominem ",), {"Ad Hominem": 0.8}) == 0.8

    def test_weighted_count(self):
        assert weighted_fallacy_count(("Strawman",), {"Strawman": 0.9}) == 0.95
        assert weighted_fallacy_count((), {}) == 0

    @pytest.mark.parametrize("score,band", [
        (0, "none"), (0.4, "low"), (0.89, "low"), (0.9, "medium"),
        (1.59, "medium"), (1.6, "high"), (3.0, "high"),
    ])
    def test_severity_bands(self, score, band):
        assert severity_band(score) == band

    def test_duplicate_fallacies_count_once(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((0, 0, 0), ["Strawman", "Strawman", "Strawman"]), _profile(),
        )
        assert decision.fallacy_count == 1
        assert decision.weighted_fallacy_score == 0.9

    def test_profile_weight_override(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((0, 0, 0), ["Strawman"]),
            _profile(fallacy_weights={"Strawman": 2.0}),
        )
        assert decision.weighted_fallacy_score == 2.0
        assert decision.severity_band == "high"


# ============================================================
# COOLDOWN
# ============================================================

class TestCooldown:

    def test_second_event_in_window_is_suppressed(self, engine, clock):
        first = engine.evaluate_tweet(_analysis((0.1, 0, 0), ["Ad Hominem"]), _profile())
        clock.advance(20)
        second = engine.evaluate_tweet(_analysis((0.1, 0, 0), ["Ad Hominem"]), _profile())

        assert first.level == "critical"
        assert second.level == "none"
        assert second.should_intervene is False
        assert second.cooldown.active is True
        assert second.cooldown.would_have_triggered_level == "critical"
        assert second.cooldown.remaining_ms == 30_000 - 20
        assert second.action == "SKIP_COOLDOWN(CRITICAL)"

    def test_after_window_retriggers(self, engine, clock):
        analysis = _analysis((0.1, 0, 0), ["Ad Hominem"])
        first = engine.evaluate_tweet(analysis, _profile())
        clock.advance(29_000)
        during = engine.evaluate_tweet(analysis, _profile())
        clock.advance(2_000)
        after = engine.evaluate_tweet(analysis, _profile())

        assert first.level == "critical"
        assert during.level == "none"
        assert after.level == "critical"
        assert after.cooldown.active is False

    def test_suppressed_decision_does_not_restart_window(self, engine, clock):
        analysis = _analysis((0.1, 0, 0), ["Ad Hominem"])
        start = clock()
        engine.evaluate_tweet(analysis, _profile())
        clock.advance(25_000)
        engine.evaluate_tweet(analysis, _profile())
        assert engine.last_intervention_at == start

        clock.advance(5_000)
        assert engine.evaluate_tweet(analysis, _profile()).level == "critical"

    def test_none_level_never_reports_cooldown(self, engine, clock):
        engine.evaluate_tweet(_analysis((0.1, 0, 0), ["Ad Hominem"]), _profile())
        clock.advance(10)
        quiet = engine.evaluate_tweet(_analysis((1, 1, 1)), _profile((-1, -1, -1)))
        assert quiet.cooldown.active is False
        assert quiet.cooldown.would_have_triggered_level is None
        assert quiet.action == "NO_INTERVENTION"

    def test_initial_last_intervention(self, clock):
        engine = DecisionEngine(now=clock, initial_last_intervention_at=clock() - 1_000)
        decision = engine.evaluate_tweet(_analysis((0, 0, 0), ["Strawman"]), _profile())
        assert decision.cooldown.active is True

    def test_profile_cooldown_override(self, engine, clock):
        analysis = _analysis((0.1, 0, 0), ["Ad Hominem"])
        engine.evaluate_tweet(analysis, _profile(cooldown_ms=100))
        clock.advance(100)
        assert engine.evaluate_tweet(analysis, _profile(cooldown_ms=100)).level == "critical"

    def test_concurrent_evaluations_emit_once(self, engine):
        analysis = _analysis((0, 0, 0), ["Strawman"])
        levels = []

        def run():
            levels.append(engine.evaluate_tweet(analysis, _profile()).level)

        threads = [threading.Thread(target=run) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert levels.count("critical") == 1
        assert levels.count("none") == 15


# ============================================================
# OVERRIDES
# ============================================================

class TestThresholdOverrides:

    def test_wide_thresholds(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((-1, -1, -1)),
            _profile((1, 1, 1), echo_chamber_max_distance=4, mild_bias_max_distance=4),
        )
        assert decision.level == "low"

    def test_negative_thresholds_disable_bands(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((0, 0, 0), ["Strawman", "Ad Hominem"]),
            _profile(echo_chamber_max_distance=-1, mild_bias_max_distance=-1),
        )
        assert decision.level == "none"

    def test_override_does_not_leak_to_next_call(self, engine):
        engine.evaluate_tweet(
            _analysis((0.3, 0, 0)), _profile(echo_chamber_max_distance=1, mild_bias_max_distance=1),
        )
        engine.reset_cooldown()
        assert engine.evaluate_tweet(_analysis((0.3, 0, 0)), _profile()).level == "none"


# ============================================================
# TRACE LOG
# ============================================================

class TestTraceLog:

    def test_tree_format(self, engine):
        decision = engine.evaluate_tweet(
            _analysis((0.12, 0.01, 0.02), ["Ad Hominem"], topic="Climate"),
            _profile((0.1, 0, 0)),
        )
        assert re.match(
            r"^Tweet Detected -> Topic: .* -> Bias Score: .* -> User Bias: .* -> Distance: .* -> ",
            decision.log.tree,
        )
        assert decision.log.tree.endswith("-> CRITICAL_INTERVENTION")
        assert decision.log.fields["topic"] == "Climate"
        assert decision.log.fields["decision"] == "critical"

    def test_tree_numbers_have_three_decimals(self, engine):
        decision = engine.evaluate_tweet(_analysis((0.3, 0.3, 0.3)), _profile())
        assert "Bias Score: 0.300" in decision.log.tree
        assert "User Bias: 0.000" in decision.log.tree
        assert "Distance: 0.520" in decision.log.tree

    def test_to_dict_is_camel_case(self, engine):
        data = engine.evaluate_tweet(_analysis((0, 0, 0), ["Strawman"]), _profile()).to_dict()
        assert data["shouldIntervene"] is True
        assert data["severityBand"] == "medium"
        assert data["cooldown"]["wouldHaveTriggeredLevel"] is None
