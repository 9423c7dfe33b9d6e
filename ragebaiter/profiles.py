"""
User Profiles — Stored Viewer Vectors and Feedback Drift

The decision engine compares a post's vector against the viewer's own
position. That position lives server-side in a ProfileStore, keyed by
user id, and moves a small step each time the viewer reacts to an
intervention:

    acknowledged   no change
    agreed         each axis steps toward the post's vector
    dismissed      each axis steps away from it

Step size grows with the per-axis gap (0.04 + 0.18 * |gap|) and is capped
at 0.2 per event. Every axis stays inside [-1, 1].

Contract:
    get_vector(user_id)          -> ContentVector | None
    set_vector(user_id, vector)  -> None

Implementations may raise; callers decide whether a failure is fatal.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from ragebaiter.config import settings
from ragebaiter.models import AXES, ContentVector, clamp

FEEDBACK_TYPES = ("acknowledged", "agreed", "dismissed")

BASE_DRIFT_STEP = 0.04
DISTANCE_DRIFT_SCALE = 0.18
PER_EVENT_DRIFT_CAP = 0.2


# ============================================================
# DRIFT
# ============================================================

@dataclass(frozen=True)
class DriftResult:
    before: ContentVector
    after: ContentVector
    applied_delta: dict[str, float]

    def to_dict(self) -> dict:
        return {
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "appliedDelta": dict(self.applied_delta),
        }


def _step(gap: float) -> float:
    return min(PER_EVENT_DRIFT_CAP, BASE_DRIFT_STEP + abs(gap) * DISTANCE_DRIFT_SCALE)


def _drift_toward(current: float, target: float) -> float:
    delta = target - current
    if delta == 0:
        return current
    step = _step(delta)
    if delta > 0:
        return clamp(min(current + step, target), -1.0, 1.0)
    return clamp(max(current - step, target), -1.0, 1.0)


def _drift_away(current: float, target: float) -> float:
    gap = current - target
    if gap == 0:
        # Sitting on the target: move toward the opposite side of it
        direction = 1.0 if target == 0 else -math.copysign(1.0, target)
    else:
        direction = math.copysign(1.0, gap)
    return clamp(current + direction * _step(gap), -1.0, 1.0)


def apply_feedback_drift(
    current: ContentVector, tweet: ContentVector, feedback_type: str,
) -> DriftResult:
    """Move the viewer's vector one event's worth toward or away from a post."""
    if feedback_type not in FEEDBACK_TYPES:
        raise ValueError(f"Unknown feedback type: {feedback_type}")

    if feedback_type == "acknowledged":
        return DriftResult(
            before=current, after=current, applied_delta={axis: 0.0 for axis in AXES},
        )

    drift = _drift_toward if feedback_type == "agreed" else _drift_away
    after = ContentVector(**{
        axis: drift(getattr(current, axis), getattr(tweet, axis)) for axis in AXES
    })
    return DriftResult(
        before=current,
        after=after,
        applied_delta={
            axis: round(getattr(after, axis) - getattr(current, axis), 6) for axis in AXES
        },
    )


# ============================================================
# STORES
# ============================================================

class ProfileStore(ABC):
    """Persistent user id → viewer vector store."""

    @abstractmethod
    async def get_vector(self, user_id: str) -> Optional[ContentVector]:
        ...

    @abstractmethod
    async def set_vector(self, user_id: str, vector: ContentVector) -> None:
        ...


class InMemoryProfileStore(ProfileStore):
    def __init__(self):
        self._vectors: dict[str, ContentVector] = {}

    async def get_vector(self, user_id: str) -> Optional[ContentVector]:
        return self._vectors.get(user_id)

    async def set_vector(self, user_id: str, vector: ContentVector) -> None:
        self._vectors[user_id] = vector

    def __len__(self) -> int:
        return len(self._vectors)


class SupabaseProfileStore(ProfileStore):
    """One row per user in a PostgREST table, merged on auth_id."""

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        table: str = "users",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self.table = table
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @classmethod
    def from_settings(
        cls, table: str = "users", client: Optional[httpx.AsyncClient] = None,
    ) -> Optional[SupabaseProfileStore]:
        """None when Supabase is not configured."""
        if not settings.supabase_enabled:
            return None
        return cls(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, table, client)

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }

    @property
    def _table_url(self) -> str:
        return f"{self._base_url}/rest/v1/{self.table}"

    async def get_vector(self, user_id: str) -> Optional[ContentVector]:
        response = await self._client.get(
            self._table_url,
            params={
                "auth_id": f"eq.{user_id}",
                "select": "vector_social,vector_economic,vector_populist",
                "limit": "1",
            },
            headers=self._headers(),
        )
        response.raise_for_status()

        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        return ContentVector(
            social=float(row.get("vector_social") or 0.0),
            economic=float(row.get("vector_economic") or 0.0),
            populist=float(row.get("vector_populist") or 0.0),
        )

    async def set_vector(self, user_id: str, vector: ContentVector) -> None:
        response = await self._client.post(
            self._table_url,
            params={"on_conflict": "auth_id"},
            headers={
                **self._headers(),
                "Prefer": "resolution=merge-duplicates,return=minimal",
            },
            json={
                "auth_id": user_id,
                "vector_social": vector.social,
                "vector_economic": vector.economic,
                "vector_populist": vector.populist,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
