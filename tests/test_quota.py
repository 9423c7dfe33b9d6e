"""
Quota Tests

  1. Period arithmetic (UTC buckets and reset instants)
  2. InMemoryQuotaStore atomic compare-and-increment
  3. QuotaService read cache, gate codes, BYOK, failure policy
  4. SupabaseQuotaStore RPC wire shape
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ragebaiter.models import IncrementResult, QuotaStatus
from ragebaiter.quota import (
    DAILY_LIMIT_EXCEEDED,
    QUOTA_EXHAUSTED,
    QUOTA_UNAVAILABLE,
    InMemoryQuotaStore,
    QuotaService,
    QuotaStore,
    SupabaseQuotaStore,
    next_reset,
    period_key,
)

# FakeClock starts at 2023-11-14T22:13:20Z
DAY_RESET = "2023-11-15T00:00:00Z"
MONTH_RESET = "2023-12-01T00:00:00Z"


class CountingStore(QuotaStore):
    """Wraps InMemoryQuotaStore and counts status reads."""

    def __init__(self, clock):
        self.inner = InMemoryQuotaStore(now=clock)
        self.reads = 0

    async def get_status(self, user_id, limit, period):
        self.reads += 1
        return await self.inner.get_status(user_id, limit, period)

    async def increment(self, user_id, limit, period):
        return await self.inner.increment(user_id, limit, period)


class BrokenStore(QuotaStore):
    async def get_status(self, user_id, limit, period):
        raise ConnectionError("store down")

    async def increment(self, user_id, limit, period):
        raise ConnectionError("store down")


# ============================================================
# PERIODS
# ============================================================

class TestPeriods:

    def test_period_keys(self, clock):
        assert period_key("day", clock()) == "2023-11-14"
        assert period_key("month", clock()) == "2023-11"

    def test_next_reset(self, clock):
        assert next_reset("day", clock()).isoformat() == "2023-11-15T00:00:00+00:00"
        assert next_reset("month", clock()).isoformat() == "2023-12-01T00:00:00+00:00"

    def test_december_rolls_year(self):
        dec = 1_703_000_000_000  # 2023-12-19
        assert next_reset("month", dec).isoformat() == "2024-01-01T00:00:00+00:00"

    def test_unknown_period(self, clock):
        with pytest.raises(ValueError):
            period_key("week", clock())
        with pytest.raises(ValueError):
            QuotaService(InMemoryQuotaStore(), period="week")


# ============================================================
# IN-MEMORY STORE
# ============================================================

class TestInMemoryQuotaStore:

    @pytest.mark.asyncio
    async def test_increment_up_to_limit(self, clock):
        store = InMemoryQuotaStore(now=clock)
        results = [await store.increment("u1", 2, "month") for _ in range(3)]

        assert [r.success for r in results] == [True, True, False]
        assert [r.used for r in results] == [1, 2, 2]
        assert results[0].resets_at == MONTH_RESET

    @pytest.mark.asyncio
    async def test_concurrent_increments_never_exceed_limit(self, clock):
        store = InMemoryQuotaStore(now=clock)
        results = await asyncio.gather(*[store.increment("u1", 5, "day") for _ in range(20)])
        assert sum(r.success for r in results) == 5
        status = await store.get_status("u1", 5, "day")
        assert status.used == 5
        assert status.remaining == 0

    @pytest.mark.asyncio
    async def test_users_and_periods_are_separate(self, clock):
        store = InMemoryQuotaStore(now=clock)
        await store.increment("u1", 5, "day")
        assert (await store.get_status("u2", 5, "day")).used == 0
        assert (await store.get_status("u1", 5, "month")).used == 0

    @pytest.mark.asyncio
    async def test_day_rollover_resets_count(self, clock):
        store = InMemoryQuotaStore(now=clock)
        store.set_used("u1", "day", 5)
        assert (await store.get_status("u1", 5, "day")).remaining == 0

        clock.advance(2 * 3600 * 1000)
        status = await store.get_status("u1", 5, "day")
        assert status.used == 0
        assert status.resets_at == "2023-11-16T00:00:00Z"


# ============================================================
# SERVICE
# ============================================================

class TestQuotaService:

    @pytest.mark.asyncio
    async def test_status_is_cached_for_ttl(self, clock):
        store = CountingStore(clock)
        service = QuotaService(store, limit=10, cache_ttl_ms=60_000, now=clock)

        await service.get_quota_status("u1")
        clock.advance(59_999)
        await service.get_quota_status("u1")
        assert store.reads == 1

        clock.advance(1)
        await service.get_quota_status("u1")
        assert store.reads == 2

    @pytest.mark.asyncio
    async def test_increment_refreshes_cache(self, clock):
        store = CountingStore(clock)
        service = QuotaService(store, limit=10, now=clock)

        await service.increment_quota("u1")
        status = await service.get_quota_status("u1")
        assert status.used == 1
        assert store.reads == 0

    @pytest.mark.asyncio
    async def test_invalidate_forces_read(self, clock):
        store = CountingStore(clock)
        service = QuotaService(store, limit=10, now=clock)
        await service.get_quota_status("u1")
        service.invalidate("u1")
        await service.get_quota_status("u1")
        assert store.reads == 2

    @pytest.mark.asyncio
    async def test_has_quota_remaining(self, clock):
        store = InMemoryQuotaStore(now=clock)
        service = QuotaService(store, limit=1, now=clock)
        assert await service.has_quota_remaining("u1") is True
        await service.increment_quota("u1")
        assert await service.has_quota_remaining("u1") is False

    @pytest.mark.asyncio
    async def test_check_rejects_exhausted_monthly(self, clock):
        store = InMemoryQuotaStore(now=clock)
        store.set_used("u1", "month", 3)
        service = QuotaService(store, limit=3, now=clock)

        decision = await service.check("u1")
        assert decision.allowed is False
        assert decision.code == QUOTA_EXHAUSTED
        assert decision.http_status == 429
        assert decision.status.resets_at == MONTH_RESET
        error = decision.to_error()["error"]
        assert error["code"] == QUOTA_EXHAUSTED
        assert error["quota"]["remaining"] == 0

    @pytest.mark.asyncio
    async def test_daily_code_and_retry_after(self, clock):
        store = InMemoryQuotaStore(now=clock)
        store.set_used("u1", "day", 2)
        service = QuotaService(store, limit=2, period="day", now=clock)

        decision = await service.check("u1")
        assert decision.code == DAILY_LIMIT_EXCEEDED
        assert decision.retry_after_seconds == 6400
        assert decision.to_error()["error"]["retryAfterSeconds"] == 6400

    @pytest.mark.asyncio
    async def test_consume_until_rejected(self, clock):
        service = QuotaService(InMemoryQuotaStore(now=clock), limit=2, now=clock)
        outcomes = [await service.consume("u1") for _ in range(3)]
        assert [o.allowed for o in outcomes] == [True, True, False]
        assert outcomes[1].status.remaining == 0
        assert outcomes[2].code == QUOTA_EXHAUSTED

    @pytest.mark.asyncio
    async def test_byok_bypasses_quota(self, clock):
        store = InMemoryQuotaStore(now=clock)
        store.set_used("u1", "month", 99)
        service = QuotaService(store, limit=1, now=clock)

        for decision in (await service.check("u1", byok=True), await service.consume("u1", byok=True)):
            assert decision.allowed is True
            assert decision.bypassed is True
        assert (await store.get_status("u1", 1, "month")).used == 99

    @pytest.mark.asyncio
    async def test_anonymous_is_not_metered(self, clock):
        service = QuotaService(BrokenStore(), now=clock)
        assert (await service.check(None)).allowed is True
        assert (await service.consume(None)).allowed is True

    @pytest.mark.asyncio
    async def test_read_failure_fails_open(self, clock, caplog):
        service = QuotaService(BrokenStore(), now=clock)
        decision = await service.check("u1")
        assert decision.allowed is True
        assert decision.status is None
        assert "allowing request" in caplog.text

    @pytest.mark.asyncio
    async def test_increment_failure_fails_closed(self, clock):
        service = QuotaService(BrokenStore(), now=clock)
        decision = await service.consume("u1")
        assert decision.allowed is False
        assert decision.code == QUOTA_UNAVAILABLE
        assert decision.http_status == 503


# ============================================================
# SUPABASE RPC
# ============================================================

def _rpc_store(handler, clock) -> SupabaseQuotaStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseQuotaStore("https://db.example.test/", "service-key", client=client, now=clock)


class TestSupabaseQuotaStore:

    @pytest.mark.asyncio
    async def test_increment_calls_period_rpc(self, clock):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{
                "success": True, "analyses_used": 4, "limit": 100,
                "reset_date": "2023-12-01T00:00:00Z",
            }])

        store = _rpc_store(handler, clock)
        result = await store.increment("u1", 100, "month")

        assert result == IncrementResult(success=True, used=4, limit=100, resets_at=MONTH_RESET)
        request = seen[0]
        assert request.url.path == "/rest/v1/rpc/increment_quota"
        assert request.headers["apikey"] == "service-key"
        assert request.headers["authorization"] == "Bearer service-key"
        assert json.loads(request.content) == {"p_user_id": "u1", "p_limit": 100}

    @pytest.mark.asyncio
    async def test_daily_status_rpc_and_fallbacks(self, clock):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"analyses_used": "2"})

        store = _rpc_store(handler, clock)
        status = await store.get_status("u1", 15, "day")

        assert paths == ["/rest/v1/rpc/get_or_create_daily_usage"]
        assert status == QuotaStatus(used=2, limit=15, resets_at=DAY_RESET)

    @pytest.mark.asyncio
    async def test_non_true_success_is_failure(self, clock):
        store = _rpc_store(lambda r: httpx.Response(200, json=[{"success": "yes"}]), clock)
        result = await store.increment("u1", 10, "day")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_http_error_raises(self, clock):
        store = _rpc_store(lambda r: httpx.Response(500, json={"message": "boom"}), clock)
        with pytest.raises(httpx.HTTPStatusError):
            await store.increment("u1", 10, "month")

        service = QuotaService(store, now=clock)
        assert (await service.consume("u1")).code == QUOTA_UNAVAILABLE
