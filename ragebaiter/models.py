"""
Domain Models

Value types shared by the analyzers, the result cache, the quota layer
and the decision engine. Vectors clamp on construction, so a
ContentVector is never held out of range.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

AXES = ("social", "economic", "populist")


def clamp(value: float, low: float, high: float) -> float:
    """Clamp into [low, high]; NaN and infinities collapse to 0 before clamping."""
    if not math.isfinite(value):
        value = 0.0
    return max(low, min(high, float(value)))


# ============================================================
# ANALYSIS PAYLOADS
# ============================================================

@dataclass(frozen=True)
class ContentVector:
    """A point in the fixed 3-axis ideological space, each axis in [-1, 1]."""
    social: float = 0.0
    economic: float = 0.0
    populist: float = 0.0

    def __post_init__(self):
        for axis in AXES:
            object.__setattr__(self, axis, clamp(getattr(self, axis), -1.0, 1.0))

    def distance_to(self, other: ContentVector) -> float:
        """Euclidean distance."""
        return math.sqrt(
            (self.social - other.social) ** 2
            + (self.economic - other.economic) ** 2
            + (self.populist - other.populist) ** 2
        )

    def average_absolute_bias(self) -> float:
        return round((abs(self.social) + abs(self.economic) + abs(self.populist)) / 3, 3)

    def to_dict(self) -> dict:
        return {"social": self.social, "economic": self.economic, "populist": self.populist}

    @classmethod
    def from_dict(cls, data: dict) -> ContentVector:
        return cls(
            social=float(data.get("social", 0.0)),
            economic=float(data.get("economic", 0.0)),
            populist=float(data.get("populist", 0.0)),
        )


def _ordered_unique(labels) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for label in labels:
        cleaned = " ".join(str(label).split())
        if cleaned and cleaned not in seen:
            seen[cleaned] = None
    return tuple(seen)


@dataclass(frozen=True)
class Phase1Analysis:
    """Content-level analysis. Depends only on the text, so it is cached globally."""
    vector: ContentVector
    fallacies: tuple[str, ...] = ()
    topic: str = ""
    confidence: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "fallacies", _ordered_unique(self.fallacies))
        object.__setattr__(self, "confidence", clamp(self.confidence, 0.0, 1.0))

    def to_dict(self) -> dict:
        return {
            "vector": self.vector.to_dict(),
            "fallacies": list(self.fallacies),
            "topic": self.topic,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Phase1Analysis:
        return cls(
            vector=ContentVector.from_dict(data.get("vector") or {}),
            fallacies=tuple(data.get("fallacies") or ()),
            topic=str(data.get("topic") or ""),
            confidence=float(data.get("confidence", 0.0)),
        )


PHASE2_FIELDS = {
    "counter_argument": "counterArgument",
    "logic_failure": "logicFailure",
    "claim": "claim",
    "mechanism": "mechanism",
    "data_check": "dataCheck",
    "socratic_challenge": "socraticChallenge",
}


@dataclass(frozen=True)
class Phase2Analysis:
    """Per (content, user) rebuttal. All fields are non-empty trimmed strings."""
    counter_argument: str
    logic_failure: str
    claim: str
    mechanism: str
    data_check: str
    socratic_challenge: str

    def to_dict(self) -> dict:
        return {wire: getattr(self, attr) for attr, wire in PHASE2_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: dict) -> Phase2Analysis:
        return cls(**{attr: str(data.get(wire, "")).strip() for attr, wire in PHASE2_FIELDS.items()})


@dataclass(frozen=True)
class Phase2Context:
    """Per-call context for the secondary analyzer."""
    phase1: Phase1Analysis
    api_key: Optional[str] = None   # BYOK credential; never cached or logged
    provider: Optional[str] = None


# ============================================================
# CACHE RECORDS
# ============================================================

@dataclass
class CacheEntry(Generic[T]):
    """Memory cache slot. Reads refresh recency but never extend expires_at."""
    value: T
    expires_at: float
    analyzed_at: float = 0.0


@dataclass
class StoredRecord:
    """Row shape exchanged with a Repository."""
    key: str
    text: str
    payload: dict
    analyzed_at: float
    expires_at: float


@dataclass
class AnalyzeResult(Generic[T]):
    """Return value of AnalysisCacheService.analyze()."""
    source: str          # "cache" | "upstream"
    key: str
    result: T
    analyzed_at: float
    expires_at: float

    def to_dict(self) -> dict:
        return {"source": self.source, "key": self.key, "result": as_dict(self.result)}


# ============================================================
# QUOTA
# ============================================================

@dataclass
class QuotaStatus:
    used: int
    limit: int
    resets_at: str
    remaining: int = field(init=False)

    def __post_init__(self):
        self.remaining = max(0, self.limit - self.used)

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "resetsAt": self.resets_at,
        }


@dataclass
class IncrementResult:
    """Outcome of an atomic compare-and-increment at the quota store."""
    success: bool
    used: int
    limit: int
    resets_at: str

    def to_status(self) -> QuotaStatus:
        return QuotaStatus(used=self.used, limit=self.limit, resets_at=self.resets_at)


def as_dict(value: Any) -> Any:
    """Best-effort conversion of a model (or plain value) into JSON-ready data."""
    return value.to_dict() if hasattr(value, "to_dict") else value
