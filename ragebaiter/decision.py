"""
Decision Engine — Intervention Level with Cooldown

Turns a content analysis plus the viewer's vector into a bounded
intervention level:

  1. distance          Euclidean, content vs user vector (rounded to 3dp)
  2. weighted score    sum of per-fallacy severity weights
  3. severity band     fixed cutoffs on the weighted score
  4. raw level         distance bands, adjusted by whether fallacies exist
  5. cooldown gate     a qualifying level inside the window is emitted as
                       "none" and recorded as would_have_triggered_level
  6. trace             "Tweet Detected -> Topic: ... -> <ACTION>"

The only state kept across calls is last_intervention_at, updated only
when a non-none level is actually emitted. The read-compare-update on it
runs under a lock.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from ragebaiter.config import settings
from ragebaiter.models import ContentVector, Phase1Analysis
from ragebaiter.rate_limit import now_ms

logger = logging.getLogger(__name__)

LEVELS = ("none", "low", "medium", "critical")

DEFAULT_ECHO_CHAMBER_MAX_DISTANCE = 0.2
DEFAULT_MILD_BIAS_MAX_DISTANCE = 0.4
DEFAULT_COOLDOWN_MS = 30_000
DEFAULT_FALLACY_WEIGHT = 0.5

FALLACY_WEIGHTS: dict[str, float] = {
    "Ad Hominem": 0.8,
    "Strawman": 0.9,
    "False Dilemma": 0.7,
    "Appeal to Authority": 0.5,
    "Hasty Generalization": 0.6,
    "Slippery Slope": 0.6,
    "Red Herring": 0.5,
    "Appeal to Emotion": 0.7,
    "Bandwagon": 0.4,
    "Whataboutism": 0.8,
    "Tu Quoque": 0.7,
    "Loaded Question": 0.6,
}

# Severity band cutoffs on the weighted fallacy score
LOW_BAND_MAX = 0.9
MEDIUM_BAND_MAX = 1.6


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class DecisionThresholds:
    echo_chamber_max_distance: float = DEFAULT_ECHO_CHAMBER_MAX_DISTANCE
    mild_bias_max_distance: float = DEFAULT_MILD_BIAS_MAX_DISTANCE


@dataclass(frozen=True)
class DecisionConfig:
    """Per-profile overrides. None means "use the engine default"."""
    echo_chamber_max_distance: Optional[float] = None
    mild_bias_max_distance: Optional[float] = None
    cooldown_ms: Optional[float] = None
    fallacy_weights: dict[str, float] = field(default_factory=dict)

    def thresholds(self) -> DecisionThresholds:
        return DecisionThresholds(
            echo_chamber_max_distance=(
                DEFAULT_ECHO_CHAMBER_MAX_DISTANCE
                if self.echo_chamber_max_distance is None
                else self.echo_chamber_max_distance
            ),
            mild_bias_max_distance=(
                DEFAULT_MILD_BIAS_MAX_DISTANCE
                if self.mild_bias_max_distance is None
                else self.mild_bias_max_distance
            ),
        )


@dataclass(frozen=True)
class UserProfile:
    user_vector: ContentVector
    decision_config: DecisionConfig = field(default_factory=DecisionConfig)


# ============================================================
# RESULT
# ============================================================

@dataclass
class CooldownState:
    active: bool
    remaining_ms: float
    last_intervention_at: Optional[float]
    would_have_triggered_level: Optional[str]

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "remainingMs": self.remaining_ms,
            "lastInterventionAt": self.last_intervention_at,
            "wouldHaveTriggeredLevel": self.would_have_triggered_level,
        }


@dataclass
class DecisionLog:
    tree: str
    fields: dict


@dataclass
class Decision:
    level: str
    should_intervene: bool
    distance: float
    fallacy_count: int
    weighted_fallacy_score: float
    weighted_fallacy_count: float
    severity_band: str
    cooldown: CooldownState
    action: str
    log: DecisionLog

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "shouldIntervene": self.should_intervene,
            "distance": self.distance,
            "fallacyCount": self.fallacy_count,
            "weightedFallacyScore": self.weighted_fallacy_score,
            "weightedFallacyCount": self.weighted_fallacy_count,
            "severityBand": self.severity_band,
            "cooldown": self.cooldown.to_dict(),
            "action": self.action,
            "log": {"tree": self.log.tree, "fields": self.log.fields},
        }


# ============================================================
# SCORING (pure)
# ============================================================

def fallacy_weight(label: str, weights: dict[str, float]) -> float:
    return weights.get(" ".join(label.split()), DEFAULT_FALLACY_WEIGHT)


def weighted_fallacy_score(fallacies: tuple[str, ...], weights: dict[str, float]) -> float:
    return round(sum(fallacy_weight(f, weights) for f in fallacies), 3)


def weighted_fallacy_count(fallacies: tuple[str, ...], weights: dict[str, float]) -> float:
    return round(sum(0.5 + fallacy_weight(f, weights) / 2 for f in fallacies), 3)


def severity_band(score: float) -> str:
    if score <= 0:
        return "none"
    if score < LOW_BAND_MAX:
        return "low"
    if score < MEDIUM_BAND_MAX:
        return "medium"
    return "high"


def resolve_level(distance: float, fallacy_count: int, thresholds: DecisionThresholds) -> str:
    """
    Raw level before the cooldown gate. A band's upper boundary is
    inclusive (distance == mild max is still "medium"); past it the
    level drops to "none". A negative threshold disables its band.
    """
    echo = thresholds.echo_chamber_max_distance
    mild = thresholds.mild_bias_max_distance

    if fallacy_count > 0 and distance < echo:
        return "critical"
    if fallacy_count == 0 and distance <= echo:
        return "low"
    if fallacy_count > 0 and echo <= distance <= mild:
        return "medium"
    return "none"


def _action_for(level: str, suppressed: Optional[str]) -> str:
    if suppressed is not None:
        return f"SKIP_COOLDOWN({suppressed.upper()})"
    if level == "none":
        return "NO_INTERVENTION"
    return f"{level.upper()}_INTERVENTION"


# ============================================================
# ENGINE
# ============================================================

class DecisionEngine:
    """Stateful wrapper over the pure scoring, owning the cooldown timestamp."""

    def __init__(
        self,
        now: Callable[[], float] = now_ms,
        initial_last_intervention_at: Optional[float] = None,
        cooldown_ms: float = settings.COOLDOWN_MS,
        fallacy_weights: Optional[dict[str, float]] = None,
    ):
        self._now = now
        self._last_intervention_at = initial_last_intervention_at
        self.cooldown_ms = cooldown_ms
        self.fallacy_weights = {**FALLACY_WEIGHTS, **(fallacy_weights or {})}
        self._lock = threading.Lock()

    @property
    def last_intervention_at(self) -> Optional[float]:
        return self._last_intervention_at

    def reset_cooldown(self) -> None:
        with self._lock:
            self._last_intervention_at = None

    def evaluate_tweet(self, analysis: Phase1Analysis, profile: UserProfile) -> Decision:
        config = profile.decision_config
        thresholds = config.thresholds()
        cooldown_ms = self.cooldown_ms if config.cooldown_ms is None else config.cooldown_ms
        weights = {**self.fallacy_weights, **config.fallacy_weights}

        content = analysis.vector
        user = profile.user_vector
        distance = round(content.distance_to(user), 3)
        fallacies = analysis.fallacies

        score = weighted_fallacy_score(fallacies, weights)
        count = weighted_fallacy_count(fallacies, weights)
        raw_level = resolve_level(distance, len(fallacies), thresholds)

        with self._lock:
            current = self._now()
            last = self._last_intervention_at
            elapsed = math.inf if last is None else current - last

            cooldown_active = raw_level != "none" and elapsed < cooldown_ms
            remaining_ms = max(0.0, cooldown_ms - elapsed) if cooldown_active else 0
            level = "none" if cooldown_active else raw_level

            if level != "none":
                self._last_intervention_at = current
            last_intervention_at = self._last_intervention_at

        suppressed = raw_level if cooldown_active else None
        action = _action_for(level, suppressed)
        bias_score = content.average_absolute_bias()
        user_bias = user.average_absolute_bias()

        tree = (
            f"Tweet Detected -> Topic: {analysis.topic} -> Bias Score: {bias_score:.3f} -> "
            f"User Bias: {user_bias:.3f} -> Distance: {distance:.3f} -> {action}"
        )
        logger.debug(tree, extra={"decision": level, "action": action})

        return Decision(
            level=level,
            should_intervene=level != "none",
            distance=distance,
            fallacy_count=len(fallacies),
            weighted_fallacy_score=score,
            weighted_fallacy_count=count,
            severity_band=severity_band(score),
            cooldown=CooldownState(
                active=cooldown_active,
                remaining_ms=remaining_ms,
                last_intervention_at=last_intervention_at,
                would_have_triggered_level=suppressed,
            ),
            action=action,
            log=DecisionLog(
                tree=tree,
                fields={
                    "topic": analysis.topic,
                    "biasScore": bias_score,
                    "userBias": user_bias,
                    "distance": distance,
                    "fallacyCount": len(fallacies),
                    "weightedFallacyScore": score,
                    "weightedFallacyCount": count,
                    "decision": level,
                    "action": action,
                    "cooldownActive": cooldown_active,
                },
            ),
        )
