"""
Quota Service — per-user daily / monthly analysis counters.

The authoritative counter lives in a QuotaStore. QuotaService keeps a
short-lived local copy of each user's status (60s by default) so a
request does not pay a store round trip; while that copy is stale a few
requests may slip past the limit.

increment() is the only mutating call and must be atomic at the store:
two concurrent increments for the same user can never both succeed past
the limit.

Failure policy:
  - read path (check):      store errors fail open, logged
  - write path (consume):   store errors fail closed → QUOTA_UNAVAILABLE

A caller-supplied upstream key (BYOK) bypasses quota entirely.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from ragebaiter.config import settings
from ragebaiter.models import IncrementResult, QuotaStatus
from ragebaiter.rate_limit import now_ms

logger = logging.getLogger(__name__)

PERIODS = ("day", "month")

QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
QUOTA_UNAVAILABLE = "QUOTA_UNAVAILABLE"


# ============================================================
# PERIOD ARITHMETIC (UTC)
# ============================================================

def _utc(epoch_ms: float) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def period_key(period: str, epoch_ms: float) -> str:
    """Bucket label: '2026-10-19' for day, '2026-10' for month."""
    moment = _utc(epoch_ms)
    if period == "day":
        return moment.strftime("%Y-%m-%d")
    if period == "month":
        return moment.strftime("%Y-%m")
    raise ValueError(f"Unknown quota period: {period}")


def next_reset(period: str, epoch_ms: float) -> datetime:
    """Next UTC midnight (day) or first of next month (month)."""
    moment = _utc(epoch_ms)
    if period == "day":
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        return datetime.fromtimestamp(start.timestamp() + 86400, tz=timezone.utc)
    if period == "month":
        if moment.month == 12:
            return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
    raise ValueError(f"Unknown quota period: {period}")


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


# ============================================================
# STORES
# ============================================================

class QuotaStore(ABC):
    """Authoritative per-user counters."""

    @abstractmethod
    async def get_status(self, user_id: str, limit: int, period: str) -> QuotaStatus:
        ...

    @abstractmethod
    async def increment(self, user_id: str, limit: int, period: str) -> IncrementResult:
        """Atomically add one use if used < limit."""
        ...


class InMemoryQuotaStore(QuotaStore):
    """Process-local counters keyed by (user, period bucket)."""

    def __init__(self, now: Callable[[], float] = now_ms):
        self._now = now
        self._counts: dict[tuple[str, str, str], int] = {}
        self._lock = threading.Lock()

    def _bucket(self, user_id: str, period: str) -> tuple[tuple[str, str, str], str]:
        current = self._now()
        return (user_id, period, period_key(period, current)), _iso(next_reset(period, current))

    async def get_status(self, user_id: str, limit: int, period: str) -> QuotaStatus:
        bucket, resets_at = self._bucket(user_id, period)
        with self._lock:
            used = self._counts.get(bucket, 0)
        return QuotaStatus(used=used, limit=limit, resets_at=resets_at)

    async def increment(self, user_id: str, limit: int, period: str) -> IncrementResult:
        bucket, resets_at = self._bucket(user_id, period)
        with self._lock:
            used = self._counts.get(bucket, 0)
            if used >= limit:
                return IncrementResult(success=False, used=used, limit=limit, resets_at=resets_at)
            self._counts[bucket] = used + 1
        return IncrementResult(success=True, used=used + 1, limit=limit, resets_at=resets_at)

    def set_used(self, user_id: str, period: str, used: int) -> None:
        bucket, _ = self._bucket(user_id, period)
        with self._lock:
            self._counts[bucket] = used


def _first_row(payload: Any) -> dict:
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    return payload if isinstance(payload, dict) else {}


def _as_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(math.floor(value))
    if isinstance(value, str) and value:
        try:
            return int(math.floor(float(value)))
        except ValueError:
            return fallback
    return fallback


class SupabaseQuotaStore(QuotaStore):
    """
    Counters held by Postgres functions called over PostgREST RPC.
    The increment function performs the compare-and-increment in one
    statement, so atomicity is the database's.
    """

    RPC_NAMES = {
        "month": ("get_or_create_quota", "increment_quota"),
        "day": ("get_or_create_daily_usage", "increment_daily_usage"),
    }

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        client: Optional[httpx.AsyncClient] = None,
        now: Callable[[], float] = now_ms,
    ):
        self._base_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._now = now

    @classmethod
    def from_settings(cls, client: Optional[httpx.AsyncClient] = None) -> Optional[SupabaseQuotaStore]:
        if not settings.supabase_enabled:
            return None
        return cls(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, client)

    async def _call_rpc(self, function_name: str, user_id: str, limit: int) -> dict:
        response = await self._client.post(
            f"{self._base_url}/rest/v1/rpc/{function_name}",
            headers={
                "apikey": self._service_role_key,
                "Authorization": f"Bearer {self._service_role_key}",
            },
            json={"p_user_id": user_id, "p_limit": limit},
        )
        response.raise_for_status()
        return _first_row(response.json())

    def _resets_at(self, row: dict, period: str) -> str:
        value = row.get("resets_at") or row.get("reset_date")
        if isinstance(value, str) and value:
            return value
        return _iso(next_reset(period, self._now()))

    async def get_status(self, user_id: str, limit: int, period: str) -> QuotaStatus:
        status_rpc, _ = self.RPC_NAMES[period]
        row = await self._call_rpc(status_rpc, user_id, limit)
        return QuotaStatus(
            used=_as_int(row.get("analyses_used"), 0),
            limit=_as_int(row.get("limit"), limit),
            resets_at=self._resets_at(row, period),
        )

    async def increment(self, user_id: str, limit: int, period: str) -> IncrementResult:
        _, increment_rpc = self.RPC_NAMES[period]
        row = await self._call_rpc(increment_rpc, user_id, limit)
        return IncrementResult(
            success=row.get("success") is True,
            used=_as_int(row.get("analyses_used"), 0),
            limit=_as_int(row.get("limit"), limit),
            resets_at=self._resets_at(row, period),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# ============================================================
# SERVICE
# ============================================================

@dataclass
class QuotaDecision:
    allowed: bool
    status: Optional[QuotaStatus] = None
    code: Optional[str] = None
    bypassed: bool = False
    retry_after_seconds: int = 0

    @property
    def http_status(self) -> int:
        return 503 if self.code == QUOTA_UNAVAILABLE else 429

    def to_error(self) -> dict:
        messages = {
            QUOTA_EXHAUSTED: "Monthly analysis quota exhausted",
            DAILY_LIMIT_EXCEEDED: "Daily analysis limit reached. Try again tomorrow.",
            QUOTA_UNAVAILABLE: "Quota service unavailable",
        }
        error = {
            "code": self.code,
            "message": messages.get(self.code, "Quota check failed"),
        }
        if self.status is not None:
            error["quota"] = self.status.to_dict()
        if self.retry_after_seconds:
            error["retryAfterSeconds"] = self.retry_after_seconds
        return {"error": error}


class QuotaService:
    """One counter family (daily or monthly) with a local read cache."""

    def __init__(
        self,
        store: QuotaStore,
        limit: int = settings.MONTHLY_QUOTA,
        period: str = "month",
        cache_ttl_ms: int = settings.QUOTA_CACHE_TTL_MS,
        now: Callable[[], float] = now_ms,
        exhausted_code: Optional[str] = None,
    ):
        if period not in PERIODS:
            raise ValueError(f"Unknown quota period: {period}")
        self._store = store
        self.limit = limit
        self.period = period
        self._cache_ttl_ms = cache_ttl_ms
        self._now = now
        self.exhausted_code = exhausted_code or (
            DAILY_LIMIT_EXCEEDED if period == "day" else QUOTA_EXHAUSTED
        )
        self._cache: dict[str, tuple[QuotaStatus, float]] = {}

    def _cache_put(self, user_id: str, status: QuotaStatus) -> None:
        self._cache[user_id] = (status, self._now() + self._cache_ttl_ms)

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    async def get_quota_status(self, user_id: str) -> QuotaStatus:
        cached = self._cache.get(user_id)
        if cached is not None and self._now() < cached[1]:
            return cached[0]

        status = await self._store.get_status(user_id, self.limit, self.period)
        self._cache_put(user_id, status)
        return status

    async def has_quota_remaining(self, user_id: str) -> bool:
        status = await self.get_quota_status(user_id)
        return status.remaining > 0

    async def increment_quota(self, user_id: str) -> IncrementResult:
        result = await self._store.increment(user_id, self.limit, self.period)
        self._cache_put(user_id, result.to_status())
        return result

    def _seconds_until(self, resets_at: str) -> int:
        try:
            reset = datetime.fromisoformat(resets_at.replace("Z", "+00:00"))
        except ValueError:
            return 0
        return max(1, math.ceil(reset.timestamp() - self._now() / 1000))

    def _rejection(self, status: QuotaStatus) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            status=status,
            code=self.exhausted_code,
            retry_after_seconds=self._seconds_until(status.resets_at),
        )

    async def check(self, user_id: Optional[str], byok: bool = False) -> QuotaDecision:
        """Read-only gate. Anonymous callers and BYOK requests are not metered."""
        if byok:
            return QuotaDecision(allowed=True, bypassed=True)
        if not user_id:
            return QuotaDecision(allowed=True)

        try:
            status = await self.get_quota_status(user_id)
        except Exception as e:
            logger.warning(
                f"Quota read failed, allowing request: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            return QuotaDecision(allowed=True)

        if status.remaining <= 0:
            logger.info(
                "Quota exhausted",
                extra={"user_id": user_id, "decision": self.exhausted_code},
            )
            return self._rejection(status)
        return QuotaDecision(allowed=True, status=status)

    async def consume(self, user_id: Optional[str], byok: bool = False) -> QuotaDecision:
        """Spend one unit. Store failures reject the request."""
        if byok:
            return QuotaDecision(allowed=True, bypassed=True)
        if not user_id:
            return QuotaDecision(allowed=True)

        try:
            result = await self.increment_quota(user_id)
        except Exception as e:
            logger.warning(
                f"Quota increment failed, rejecting request: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
            )
            return QuotaDecision(allowed=False, code=QUOTA_UNAVAILABLE)

        status = result.to_status()
        if not result.success:
            logger.info(
                "Quota exhausted at increment",
                extra={"user_id": user_id, "decision": self.exhausted_code},
            )
            return self._rejection(status)
        return QuotaDecision(allowed=True, status=status)
