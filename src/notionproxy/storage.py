"""Storage backend selection and startup seeding.

The backend is chosen once, at startup: SQLite when the store is enabled and
reachable, otherwise the in-memory fallback for the rest of the process
lifetime. Nothing downstream checks which one it got.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import aiosqlite
import structlog

from notionproxy.cache import MemoryCacheStore, SqliteCacheStore
from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.mappings import MemoryMappingStore, SqliteMappingStore

if TYPE_CHECKING:
    from notionproxy.config import StoreSettings, UpstreamSettings
    from notionproxy.protocols import CacheStoreProtocol, MappingStoreProtocol

log = structlog.get_logger()


@dataclass
class Storage:
    """The mapping and cache stores handed to the rest of the application."""

    mappings: MappingStoreProtocol
    cache: CacheStoreProtocol
    backend: Literal["sqlite", "memory"]
    db: aiosqlite.Connection | None = None

    @property
    def persistent(self) -> bool:
        return self.backend == "sqlite"

    async def close(self) -> None:
        if self.db is not None:
            await self.db.close()


def memory_storage() -> Storage:
    return Storage(mappings=MemoryMappingStore(), cache=MemoryCacheStore(), backend="memory")


async def connect_sqlite(db_path: str) -> Storage:
    """Open the SQLite database and create the schema.

    Raises ProxyError(STORE_UNAVAILABLE) if the file cannot be opened or
    initialised.
    """
    db: aiosqlite.Connection | None = None
    try:
        if db_path != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            db_path = str(path)
        db = await aiosqlite.connect(db_path)
        await db.execute("PRAGMA journal_mode = WAL")
        mappings = SqliteMappingStore(db)
        cache = SqliteCacheStore(db)
        await mappings.init_db()
        await cache.init_db()
    except (OSError, aiosqlite.Error) as exc:
        if db is not None:
            await db.close()
        raise ProxyError(
            code=ErrorCode.STORE_UNAVAILABLE,
            message=f"Cannot open store at {db_path}: {exc}",
            suggestion="Check that the data directory exists and is writable.",
        ) from exc
    return Storage(mappings=mappings, cache=cache, backend="sqlite", db=db)


async def open_storage(settings: StoreSettings) -> Storage:
    """Return SQLite storage, or the in-memory fallback if it is disabled or unreachable."""
    if not settings.enabled:
        log.warning("store_disabled", backend="memory", persistent=False)
        return memory_storage()
    try:
        storage = await connect_sqlite(settings.db_path)
    except ProxyError as exc:
        log.warning(
            "store_unavailable",
            code=exc.code,
            message=exc.message,
            backend="memory",
            persistent=False,
        )
        return memory_storage()
    log.info("store_opened", backend="sqlite", db_path=settings.db_path)
    return storage


async def seed_mappings(mappings: MappingStoreProtocol, upstream: UpstreamSettings) -> int:
    """Register the configured root page and seed pages. Returns mappings touched.

    The root URL becomes the root mapping only when no root exists yet. Seed
    pages with an explicit id or path are upserted; bare URLs are registered
    only if no mapping points at them. Each failure is logged and skipped.
    """
    touched = 0

    if upstream.root_url:
        try:
            if await mappings.get_root() is None:
                root = await mappings.find_by_source_url(upstream.root_url)
                if root is None:
                    root = await mappings.upsert(upstream.root_url)
                await mappings.set_root(root.id)
                touched += 1
                log.info("root_registered", url=upstream.root_url, mapping_id=root.id)
        except Exception:
            log.warning("seed_root_failed", url=upstream.root_url, exc_info=True)

    for page in upstream.seed_pages():
        try:
            if page.id is None and page.path is None:
                if await mappings.find_by_source_url(page.url) is not None:
                    continue
            mapping = await mappings.upsert(page.url, mapping_id=page.id, path=page.path)
        except Exception:
            log.warning("seed_page_failed", url=page.url, exc_info=True)
            continue
        touched += 1
        log.info("page_registered", url=page.url, mapping_id=mapping.id, path=mapping.path)

    return touched
