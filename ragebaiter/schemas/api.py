"""
API Schemas — Request and Response Models

Pydantic models for the Ragebaiter HTTP surface. Wire names are camelCase;
Python attributes stay snake_case via aliases.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ragebaiter.decision import DecisionConfig, UserProfile
from ragebaiter.models import ContentVector, Phase1Analysis


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================
# SHARED
# ============================================================

class VectorModel(WireModel):
    social: float = Field(..., allow_inf_nan=False)
    economic: float = Field(..., allow_inf_nan=False)
    populist: float = Field(..., allow_inf_nan=False)

    def to_vector(self) -> ContentVector:
        return ContentVector(social=self.social, economic=self.economic, populist=self.populist)


class Phase1Model(WireModel):
    tweet_vector: VectorModel = Field(..., alias="tweetVector")
    fallacies: list[str] = Field(default_factory=list)
    topic: str = Field(..., min_length=1)
    confidence: float = Field(..., allow_inf_nan=False)

    @field_validator("topic")
    @classmethod
    def topic_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("topic must not be blank")
        return value.strip()

    def to_analysis(self) -> Phase1Analysis:
        return Phase1Analysis(
            vector=self.tweet_vector.to_vector(),
            fallacies=tuple(self.fallacies),
            topic=self.topic,
            confidence=self.confidence,
        )

    @classmethod
    def from_analysis(cls, analysis: Phase1Analysis) -> Phase1Model:
        return cls(
            tweet_vector=VectorModel(**analysis.vector.to_dict()),
            fallacies=list(analysis.fallacies),
            topic=analysis.topic or "unknown",
            confidence=analysis.confidence,
        )


class TweetRequest(WireModel):
    tweet_id: str = Field(..., alias="tweetId", min_length=1, max_length=200)
    tweet_text: str = Field(..., alias="tweetText", min_length=1, max_length=20_000)

    @field_validator("tweet_id", "tweet_text")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


# ============================================================
# ANALYZE
# ============================================================

class AnalyzeRequest(TweetRequest):
    """POST /api/analyze request body."""

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={"examples": [
        {"tweetId": "tweet-100", "tweetText": "This is a political tweet"},
    ]})


class AnalyzeResponse(WireModel):
    success: bool = True
    source: str
    tweet_id: str = Field(..., alias="tweetId")
    analysis: Phase1Model


class Phase2Request(TweetRequest):
    """POST /api/analyze/phase2 request body."""
    phase1_result: Phase1Model = Field(..., alias="phase1Result")
    provider: Optional[str] = Field(None, pattern="^(openai|anthropic|google)$")
    api_key: Optional[str] = Field(None, alias="apiKey", max_length=500)


class Phase2Model(WireModel):
    counter_argument: str = Field(..., alias="counterArgument")
    logic_failure: str = Field(..., alias="logicFailure")
    claim: str
    mechanism: str
    data_check: str = Field(..., alias="dataCheck")
    socratic_challenge: str = Field(..., alias="socraticChallenge")


class Phase2Response(WireModel):
    success: bool = True
    source: str
    analysis: Phase2Model


# ============================================================
# DECIDE
# ============================================================

class ThresholdsModel(WireModel):
    echo_chamber_max_distance: Optional[float] = Field(None, alias="echoChamberMaxDistance")
    mild_bias_max_distance: Optional[float] = Field(None, alias="mildBiasMaxDistance")


class DecisionConfigModel(WireModel):
    thresholds: Optional[ThresholdsModel] = None
    cooldown_ms: Optional[float] = Field(None, alias="cooldownMs", ge=0)
    fallacy_weights: dict[str, float] = Field(default_factory=dict, alias="fallacyWeights")


class DecideRequest(TweetRequest):
    """POST /api/decide request body. Without userVector the caller's stored vector is used."""
    user_vector: Optional[VectorModel] = Field(None, alias="userVector")
    decision_config: Optional[DecisionConfigModel] = Field(None, alias="decisionConfig")

    def to_decision_config(self) -> DecisionConfig:
        config = self.decision_config or DecisionConfigModel()
        thresholds = config.thresholds or ThresholdsModel()
        return DecisionConfig(
            echo_chamber_max_distance=thresholds.echo_chamber_max_distance,
            mild_bias_max_distance=thresholds.mild_bias_max_distance,
            cooldown_ms=config.cooldown_ms,
            fallacy_weights=dict(config.fallacy_weights),
        )

    def to_profile(self) -> Optional[UserProfile]:
        if self.user_vector is None:
            return None
        return UserProfile(
            user_vector=self.user_vector.to_vector(),
            decision_config=self.to_decision_config(),
        )


class DecideResponse(WireModel):
    success: bool = True
    source: str
    analysis: Phase1Model
    decision: dict


# ============================================================
# PROFILE / FEEDBACK
# ============================================================

class ProfileRequest(WireModel):
    """PUT /api/profile request body."""
    user_vector: VectorModel = Field(..., alias="userVector")


class ProfileResponse(WireModel):
    success: bool = True
    user_vector: VectorModel = Field(..., alias="userVector")


class FeedbackRequest(WireModel):
    """POST /api/feedback request body."""
    tweet_id: str = Field(..., alias="tweetId", min_length=1, max_length=200)
    feedback_type: str = Field(..., alias="feedbackType", pattern="^(acknowledged|agreed|dismissed)$")
    tweet_vector: VectorModel = Field(..., alias="tweetVector")


class FeedbackResponse(WireModel):
    success: bool = True
    before: VectorModel
    after: VectorModel
    applied_delta: VectorModel = Field(..., alias="appliedDelta")


# ============================================================
# QUOTA / HEALTH
# ============================================================

class QuotaModel(WireModel):
    used: int
    limit: int
    remaining: int
    resets_at: str = Field(..., alias="resetsAt")


class QuotaResponse(WireModel):
    monthly: QuotaModel
    daily: QuotaModel


class HealthResponse(BaseModel):
    status: str
    version: str
    analyzer: str
    phase2_provider: str
    phase1_cache: dict
    phase2_cache: dict
    auth_enabled: bool
