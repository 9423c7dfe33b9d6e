"""
Analysis Repository — persistent tier behind the memory cache.

Contract:
    get(key)        -> StoredRecord | None
    upsert(record)  -> None

Implementations may raise; AnalysisCacheService swallows and logs those
errors and degrades to memory-only caching.

  - InMemoryRepository:  process-local dict (tests, single-process dev)
  - NoopRepository:      never stores anything
  - SQLiteRepository:    local file-backed store
  - SupabaseRepository:  PostgREST table over httpx
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx

from ragebaiter.config import settings
from ragebaiter.models import StoredRecord


class Repository(ABC):
    """Persistent key → StoredRecord store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[StoredRecord]:
        ...

    @abstractmethod
    async def upsert(self, record: StoredRecord) -> None:
        ...


class InMemoryRepository(Repository):
    def __init__(self):
        self._rows: dict[str, StoredRecord] = {}

    async def get(self, key: str) -> Optional[StoredRecord]:
        return self._rows.get(key)

    async def upsert(self, record: StoredRecord) -> None:
        self._rows[record.key] = record

    def __len__(self) -> int:
        return len(self._rows)


class NoopRepository(Repository):
    async def get(self, key: str) -> Optional[StoredRecord]:
        return None

    async def upsert(self, record: StoredRecord) -> None:
        return None


# ============================================================
# SQLITE
# ============================================================

class SQLiteRepository(Repository):
    """File-backed repository. Blocking sqlite calls run in a worker thread."""

    def __init__(self, db_path: str = "ragebaiter_cache.db", table: str = "analysis_cache"):
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table}")
        self.db_path = db_path
        self.table = table
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    analyzed_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_expires_at
                ON {self.table}(expires_at)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _get_sync(self, key: str) -> Optional[StoredRecord]:
        with self._lock:
            with self._get_conn() as conn:
                row = conn.execute(
                    f"""SELECT key, text, payload, analyzed_at, expires_at
                        FROM {self.table} WHERE key = ?""",
                    (key,),
                ).fetchone()
        if row is None:
            return None
        return StoredRecord(
            key=row[0],
            text=row[1],
            payload=json.loads(row[2]),
            analyzed_at=row[3],
            expires_at=row[4],
        )

    def _upsert_sync(self, record: StoredRecord) -> None:
        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    f"""INSERT INTO {self.table}
                        (key, text, payload, analyzed_at, expires_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            text = excluded.text,
                            payload = excluded.payload,
                            analyzed_at = excluded.analyzed_at,
                            expires_at = excluded.expires_at""",
                    (
                        record.key,
                        record.text,
                        json.dumps(record.payload),
                        record.analyzed_at,
                        record.expires_at,
                    ),
                )
                conn.commit()

    async def get(self, key: str) -> Optional[StoredRecord]:
        return await asyncio.to_thread(self._get_sync, key)

    async def upsert(self, record: StoredRecord) -> None:
        await asyncio.to_thread(self._upsert_sync, record)

    def purge_expired(self, now_ms: float) -> int:
        """Delete rows whose expiry has passed. Returns the number removed."""
        with self._lock:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    f"DELETE FROM {self.table} WHERE expires_at <= ?", (now_ms,),
                )
                conn.commit()
                return cursor.rowcount


# ============================================================
# SUPABASE (PostgREST)
# ============================================================

def _to_iso(epoch_ms: float) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def _from_iso(value: str) -> float:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000


class SupabaseRepository(Repository):
    """Rows in a PostgREST table; upsert merges on the key column."""

    def __init__(
        self,
        supabase_url: str,
        service_role_key: str,
        table: str = "analyzed_tweets",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self.table = table
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @classmethod
    def from_settings(
        cls, table: str = "analyzed_tweets", client: Optional[httpx.AsyncClient] = None,
    ) -> Optional[SupabaseRepository]:
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

    async def get(self, key: str) -> Optional[StoredRecord]:
        response = await self._client.get(
            self._table_url,
            params={
                "key": f"eq.{key}",
                "select": "key,text,payload,analyzed_at,expires_at",
                "limit": "1",
            },
            headers=self._headers(),
        )
        response.raise_for_status()

        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        return StoredRecord(
            key=row["key"],
            text=row.get("text") or "",
            payload=row.get("payload") or {},
            analyzed_at=_from_iso(row["analyzed_at"]),
            expires_at=_from_iso(row["expires_at"]),
        )

    async def upsert(self, record: StoredRecord) -> None:
        response = await self._client.post(
            self._table_url,
            params={"on_conflict": "key"},
            headers={
                **self._headers(),
                "Prefer": "resolution=merge-duplicates,return=minimal",
            },
            json={
                "key": record.key,
                "text": record.text,
                "payload": record.payload,
                "analyzed_at": _to_iso(record.analyzed_at),
                "expires_at": _to_iso(record.expires_at),
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
