"""
Analysis Result Cache

Two-tier, single-flight cache in front of the upstream analyzers.

  Tier 1: in-process LRU map with lazy TTL expiry (LruTtlCache)
  Tier 2: a Repository (SQLite, Supabase, ...), the cross-process store

At most one upstream call per key is in flight at any time. Concurrent
callers for the same key await the same task; callers that give up do not
cancel it, so the result still lands in the cache for the next caller.

Repository failures are logged and swallowed. The memory tier stays
authoritative for this process.

Usage:
    service = AnalysisCacheService(repository, Phase1Analyzer())
    hit = await service.analyze("tweet-100", "This is a political tweet")
    if hit is None:
        ...  # analysis unavailable
    hit.source  # "cache" | "upstream"
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from ragebaiter.models import AnalyzeResult, CacheEntry, Phase1Analysis, StoredRecord, as_dict
from ragebaiter.rate_limit import now_ms
from ragebaiter.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_ENTRIES = 100

Upstream = Callable[[str, str, Any], Awaitable[Optional[T]]]


class LruTtlCache(Generic[T]):
    """
    Ordered map with lazy expiry. Reads move an entry to the most-recent
    end but never extend its expiry; inserts past capacity drop the oldest.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, now: Callable[[], float] = now_ms):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._now = now
        self._entries: OrderedDict[str, CacheEntry[T]] = OrderedDict()

    def get(self, key: str) -> Optional[CacheEntry[T]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._now():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry

    def set(self, key: str, value: T, expires_at: float, analyzed_at: float = 0.0) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = CacheEntry(value=value, expires_at=expires_at, analyzed_at=analyzed_at)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class AnalysisCacheService(Generic[T]):
    """Entry point for analyze(key, text). Never raises; None means unavailable."""

    def __init__(
        self,
        repository: Repository,
        upstream: Upstream,
        ttl_ms: int = DEFAULT_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        now: Callable[[], float] = now_ms,
        decode: Callable[[dict], T] = Phase1Analysis.from_dict,
    ):
        self._repository = repository
        self._upstream = upstream
        self._ttl_ms = ttl_ms
        self._now = now
        self._decode = decode
        self._memory: LruTtlCache[T] = LruTtlCache(max_entries=max_entries, now=now)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._upstream_calls = 0

    async def analyze(self, key: str, text: str, context: Any = None) -> Optional[AnalyzeResult[T]]:
        result, _ = await self.analyze_tracked(key, text, context)
        return result

    async def analyze_tracked(
        self, key: str, text: str, context: Any = None,
    ) -> tuple[Optional[AnalyzeResult[T]], bool]:
        """
        Same as analyze(), plus whether this caller started the upstream
        fetch. Callers that joined an in-flight fetch get the same result
        with started=False, so per-call metering can charge exactly once.
        """
        cached = await self.check_cache(key)
        if cached is not None:
            self._hits += 1
            return cached, False

        # The repository read may have suspended; another caller can have
        # filled memory in the meantime.
        entry = self._memory.get(key)
        if entry is not None:
            self._hits += 1
            return self._from_entry(key, entry), False

        self._misses += 1
        task = self._in_flight.get(key)
        started = task is None
        if started:
            task = asyncio.ensure_future(self._fetch(key, text, context))
            self._in_flight[key] = task
        return await asyncio.shield(task), started

    async def check_cache(self, key: str) -> Optional[AnalyzeResult[T]]:
        """Memory first, then repository. Never touches the upstream."""
        entry = self._memory.get(key)
        if entry is not None:
            return self._from_entry(key, entry)

        record = await self._read_repository(key)
        if record is None:
            return None
        if record.expires_at <= self._now():
            return None

        try:
            value = self._decode(record.payload)
        except (TypeError, ValueError, KeyError):
            logger.warning(
                "Discarding undecodable repository row",
                extra={"cache_key": key},
                exc_info=True,
            )
            return None

        self._memory.set(key, value, record.expires_at, record.analyzed_at)
        return AnalyzeResult(
            source="cache",
            key=key,
            result=value,
            analyzed_at=record.analyzed_at,
            expires_at=record.expires_at,
        )

    async def write_cache(self, key: str, value: T, text: str = "") -> AnalyzeResult[T]:
        """Write-through to memory and repository. Repository errors are swallowed."""
        analyzed_at = self._now()
        expires_at = analyzed_at + self._ttl_ms
        self._memory.set(key, value, expires_at, analyzed_at)

        record = StoredRecord(
            key=key,
            text=text,
            payload=as_dict(value),
            analyzed_at=analyzed_at,
            expires_at=expires_at,
        )
        try:
            await self._repository.upsert(record)
        except Exception:
            logger.warning(
                "Repository write failed, continuing with memory cache only",
                extra={"cache_key": key},
                exc_info=True,
            )

        return AnalyzeResult(
            source="upstream",
            key=key,
            result=value,
            analyzed_at=analyzed_at,
            expires_at=expires_at,
        )

    def memory_size(self) -> int:
        return len(self._memory)

    def invalidate(self, key: str) -> None:
        """Drop the memory entry for key. The repository row is left alone."""
        self._memory.delete(key)

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "entries": len(self._memory),
            "hits": self._hits,
            "misses": self._misses,
            "upstream_calls": self._upstream_calls,
            "in_flight": len(self._in_flight),
            "hit_rate": round(self._hits / total, 3) if total > 0 else 0.0,
        }

    # --- internals ---------------------------------------------

    async def _fetch(self, key: str, text: str, context: Any) -> Optional[AnalyzeResult[T]]:
        try:
            self._upstream_calls += 1
            try:
                value = await self._upstream(key, text, context)
            except Exception:
                logger.warning(
                    "Upstream analyzer raised, treating as unavailable",
                    extra={"cache_key": key},
                    exc_info=True,
                )
                return None

            if value is None:
                return None
            return await self.write_cache(key, value, text)
        finally:
            self._in_flight.pop(key, None)

    async def _read_repository(self, key: str) -> Optional[StoredRecord]:
        try:
            return await self._repository.get(key)
        except Exception:
            logger.warning(
                "Repository read failed, falling through to upstream",
                extra={"cache_key": key},
                exc_info=True,
            )
            return None

    @staticmethod
    def _from_entry(key: str, entry: CacheEntry[T]) -> AnalyzeResult[T]:
        return AnalyzeResult(
            source="cache",
            key=key,
            result=entry.value,
            analyzed_at=entry.analyzed_at,
            expires_at=entry.expires_at,
        )
