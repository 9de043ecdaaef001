"""Shared test fixtures for the notionproxy test suite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest

from notionproxy.cache import MemoryCacheStore, SqliteCacheStore
from notionproxy.config import UpstreamSettings
from notionproxy.mappings import MemoryMappingStore, SqliteMappingStore

UPSTREAM = "https://www.notion.so"


@pytest.fixture()
async def db() -> aiosqlite.Connection:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def sqlite_cache(db: aiosqlite.Connection) -> SqliteCacheStore:
    store = SqliteCacheStore(db)
    await store.init_db()
    return store


@pytest.fixture()
async def sqlite_mappings(db: aiosqlite.Connection) -> SqliteMappingStore:
    store = SqliteMappingStore(db)
    await store.init_db()
    return store


@pytest.fixture(params=["sqlite", "memory"])
async def cache_store(request: pytest.FixtureRequest, db: aiosqlite.Connection):
    """Each cache test runs against both implementations."""
    if request.param == "memory":
        return MemoryCacheStore()
    store = SqliteCacheStore(db)
    await store.init_db()
    return store


@pytest.fixture(params=["sqlite", "memory"])
async def mapping_store(request: pytest.FixtureRequest, db: aiosqlite.Connection):
    """Each mapping test runs against both implementations."""
    if request.param == "memory":
        return MemoryMappingStore()
    store = SqliteMappingStore(db)
    await store.init_db()
    return store


@pytest.fixture()
def expire_entry():
    """Push a cache entry's expiry into the past, whatever the backend."""

    async def _expire(store, url: str) -> None:
        past = datetime.now(UTC) - timedelta(seconds=1)
        if isinstance(store, SqliteCacheStore):
            await store._db.execute(
                "UPDATE cache_entries SET expires_at = ? WHERE url = ?",
                (past.isoformat(), url),
            )
            await store._db.commit()
        else:
            store._entries[url].expires_at = past

    return _expire


@pytest.fixture()
def upstream() -> UpstreamSettings:
    return UpstreamSettings(
        base_url=UPSTREAM,
        cdn_host_suffixes=["amazonaws.com", "notion-static.com"],
    )
