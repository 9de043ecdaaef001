"""Upstream payload cache with a fixed five-minute TTL.

Two implementations of ``CacheStoreProtocol``:

- ``SqliteCacheStore`` persists entries in the ``cache_entries`` table.
- ``MemoryCacheStore`` keeps them in a process-local dict, used when the
  backing store is disabled or unreachable at startup.

Expired entries are never returned: a read that observes an expired row
deletes it and reports a miss. There is no background sweep.

All SQLite operations catch ``aiosqlite.Error`` internally and degrade
gracefully: read failures return ``None`` (treated as cache miss by callers),
write failures are logged and ignored (fetched content is still served).
Infrastructure errors never cross the store boundary.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import aiosqlite
import structlog

from notionproxy.models.cache import CacheEntry, CacheStats

log = structlog.get_logger()

CACHE_TTL = timedelta(minutes=5)

_CREATE_CACHE_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    url          TEXT PRIMARY KEY,
    content_type TEXT NOT NULL,
    payload      BLOB NOT NULL,
    headers      TEXT NOT NULL DEFAULT '{}',
    cached_at    TEXT NOT NULL,
    expires_at   TEXT NOT NULL,
    hit_count    INTEGER NOT NULL DEFAULT 0
)
"""

_CREATE_CACHE_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_cache_entries_expires ON cache_entries(expires_at)"
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SqliteCacheStore:
    """SQLite-backed payload cache implementing CacheStoreProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create the cache table. Called once at startup."""
        await self._db.execute(_CREATE_CACHE_TABLE)
        await self._db.execute(_CREATE_CACHE_INDEX)
        await self._db.commit()

    async def get(self, url: str) -> CacheEntry | None:
        """Read a live entry. Returns ``None`` on miss, expiry or read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT url, content_type, payload, headers, cached_at, expires_at, hit_count "
                "FROM cache_entries WHERE url = ?",
                (url,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            expires_at = datetime.fromisoformat(row[5])
            if expires_at <= _utcnow():
                await self._evict(url, expires_at)
                return None

            entry = CacheEntry(
                url=row[0],
                content_type=row[1],
                payload=bytes(row[2]),
                headers=json.loads(row[3]),
                cached_at=datetime.fromisoformat(row[4]),
                expires_at=expires_at,
                hit_count=row[6] + 1,
            )
        except (aiosqlite.Error, ValueError):
            log.warning("cache_read_error", url=url, exc_info=True)
            return None

        await self._record_hit(url)
        return entry

    async def put(
        self,
        url: str,
        content_type: str,
        payload: bytes,
        headers: dict[str, str],
    ) -> None:
        """Upsert an entry, resetting its expiry. Non-fatal on failure."""
        try:
            now = _utcnow()
            await self._db.execute(
                "INSERT INTO cache_entries "
                "(url, content_type, payload, headers, cached_at, expires_at, hit_count) "
                "VALUES (?, ?, ?, ?, ?, ?, 0) "
                "ON CONFLICT(url) DO UPDATE SET "
                "content_type = excluded.content_type, "
                "payload = excluded.payload, "
                "headers = excluded.headers, "
                "cached_at = excluded.cached_at, "
                "expires_at = excluded.expires_at, "
                "hit_count = 0",
                (
                    url,
                    content_type,
                    payload,
                    json.dumps(headers),
                    now.isoformat(),
                    (now + CACHE_TTL).isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", url=url, exc_info=True)

    async def stats(self) -> CacheStats:
        """Aggregate live entries. Returns empty stats on read failure."""
        try:
            cursor = await self._db.execute(
                "SELECT COUNT(*), COALESCE(SUM(hit_count), 0), "
                "COALESCE(SUM(LENGTH(payload)), 0), MIN(cached_at), MAX(cached_at) "
                "FROM cache_entries WHERE expires_at > ?",
                (_utcnow().isoformat(),),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("cache_stats_error", exc_info=True)
            return CacheStats()

        if row is None:
            return CacheStats()
        return CacheStats(
            total_cached=row[0],
            total_hits=row[1],
            total_bytes=row[2],
            oldest_cached_at=datetime.fromisoformat(row[3]) if row[3] else None,
            newest_cached_at=datetime.fromisoformat(row[4]) if row[4] else None,
        )

    async def clear(self) -> int:
        """Delete every entry and return how many were removed."""
        try:
            cursor = await self._db.execute("DELETE FROM cache_entries")
            deleted = cursor.rowcount
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_clear_error", exc_info=True)
            return 0
        log.info("cache_cleared", deleted=deleted)
        return deleted

    async def _record_hit(self, url: str) -> None:
        try:
            await self._db.execute(
                "UPDATE cache_entries SET hit_count = hit_count + 1 WHERE url = ?", (url,)
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_hit_count_error", url=url, exc_info=True)

    async def _evict(self, url: str, expires_at: datetime) -> None:
        # Only delete the row we saw expire; a concurrent put may have refreshed it.
        try:
            await self._db.execute(
                "DELETE FROM cache_entries WHERE url = ? AND expires_at <= ?",
                (url, expires_at.isoformat()),
            )
            await self._db.commit()
            log.debug("cache_evicted", url=url)
        except aiosqlite.Error:
            log.warning("cache_evict_error", url=url, exc_info=True)


class MemoryCacheStore:
    """Process-local payload cache implementing CacheStoreProtocol.

    Not persistent. Relies on the single-threaded event loop for safety:
    every method runs to completion without awaiting.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, url: str) -> CacheEntry | None:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if entry.expires_at <= _utcnow():
            del self._entries[url]
            log.debug("cache_evicted", url=url)
            return None
        entry.hit_count += 1
        return entry.model_copy()

    async def put(
        self,
        url: str,
        content_type: str,
        payload: bytes,
        headers: dict[str, str],
    ) -> None:
        now = _utcnow()
        self._entries[url] = CacheEntry(
            url=url,
            content_type=content_type,
            payload=payload,
            headers=dict(headers),
            cached_at=now,
            expires_at=now + CACHE_TTL,
        )

    async def stats(self) -> CacheStats:
        now = _utcnow()
        live = [e for e in self._entries.values() if e.expires_at > now]
        if not live:
            return CacheStats()
        return CacheStats(
            total_cached=len(live),
            total_hits=sum(e.hit_count for e in live),
            total_bytes=sum(len(e.payload) for e in live),
            oldest_cached_at=min(e.cached_at for e in live),
            newest_cached_at=max(e.cached_at for e in live),
        )

    async def clear(self) -> int:
        deleted = len(self._entries)
        self._entries.clear()
        log.info("cache_cleared", deleted=deleted)
        return deleted
