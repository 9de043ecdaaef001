"""Mapping store: externally visible ids/paths → upstream page URLs.

Two implementations of ``MappingStoreProtocol``:

- ``SqliteMappingStore`` persists mappings in the ``mappings`` table.
- ``MemoryMappingStore`` keeps them in a process-local dict.

Read paths fail open: a database error is logged and reported as "absent"
so a flaky store degrades to 404s rather than crashes. Access tracking is
best-effort. Registration writes propagate errors so the caller can report
them.

Invariants kept by both implementations:
- ids are unique (primary key / dict key)
- non-null paths are unique (partial unique index / explicit check)
- at most one mapping has ``is_root`` set; ``set_root`` moves the flag in
  a single statement so two roots never coexist
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime

import aiosqlite
import structlog

from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.models.mapping import Mapping

log = structlog.get_logger()

_ID_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"
_ID_LENGTH = 10

_CREATE_MAPPINGS_TABLE = """
CREATE TABLE IF NOT EXISTS mappings (
    id               TEXT PRIMARY KEY,
    source_url       TEXT NOT NULL,
    path             TEXT,
    is_root          INTEGER NOT NULL DEFAULT 0,
    access_count     INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TEXT,
    created_at       TEXT NOT NULL
)
"""

_CREATE_PATH_INDEX = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_mappings_path ON mappings(path) WHERE path IS NOT NULL"
)
_CREATE_SOURCE_INDEX = "CREATE INDEX IF NOT EXISTS idx_mappings_source ON mappings(source_url)"

_COLUMNS = "id, source_url, path, is_root, access_count, last_accessed_at, created_at"


def new_mapping_id() -> str:
    """Return a fresh 10-character URL-safe token."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


def _path_taken(path: str) -> ProxyError:
    return ProxyError(
        code=ErrorCode.BAD_REQUEST,
        message=f"Path already mapped: {path}",
        suggestion="Choose a different path or update the mapping that owns it.",
    )


def _row_to_mapping(row: tuple) -> Mapping:
    return Mapping(
        id=row[0],
        source_url=row[1],
        path=row[2],
        is_root=bool(row[3]),
        access_count=row[4],
        last_accessed_at=datetime.fromisoformat(row[5]) if row[5] else None,
        created_at=datetime.fromisoformat(row[6]),
    )


class SqliteMappingStore:
    """SQLite-backed mapping store implementing MappingStoreProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create the mappings table and indexes. Called once at startup."""
        await self._db.execute(_CREATE_MAPPINGS_TABLE)
        await self._db.execute(_CREATE_PATH_INDEX)
        await self._db.execute(_CREATE_SOURCE_INDEX)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Reads (fail open)
    # ------------------------------------------------------------------

    async def get(self, mapping_id: str) -> Mapping | None:
        return await self._read_one("id = ?", (mapping_id,), key=f"id:{mapping_id}")

    async def get_by_path(self, path: str) -> Mapping | None:
        return await self._read_one("path = ?", (path,), key=f"path:{path}")

    async def get_root(self) -> Mapping | None:
        return await self._read_one("is_root = 1", (), key="root")

    async def find_by_source_url(self, source_url: str) -> Mapping | None:
        """Return the earliest-created mapping for a source URL."""
        return await self._read_one("source_url = ?", (source_url,), key=f"url:{source_url}")

    async def list_all(self) -> list[Mapping]:
        """All mappings, newest first. Empty on read failure."""
        try:
            cursor = await self._db.execute(
                f"SELECT {_COLUMNS} FROM mappings ORDER BY created_at DESC, rowid DESC"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error:
            log.warning("mapping_read_error", key="list", exc_info=True)
            return []
        return [_row_to_mapping(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(
        self,
        source_url: str,
        *,
        mapping_id: str | None = None,
        path: str | None = None,
    ) -> Mapping:
        """Create a mapping, or update the one owning ``mapping_id`` / ``path``.

        Idempotent on id: concurrent first writers for the same id converge on
        a single row instead of failing with a duplicate key. Raises
        ``ProxyError(BAD_REQUEST)`` if ``path`` belongs to a different mapping.
        """
        if mapping_id is None and path is not None:
            owner = await self._select_one("path = ?", (path,))
            if owner is not None:
                mapping_id = owner.id
        mapping_id = mapping_id or new_mapping_id()

        try:
            await self._db.execute(
                "INSERT INTO mappings (id, source_url, path, created_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "source_url = excluded.source_url, "
                "path = COALESCE(excluded.path, mappings.path)",
                (mapping_id, source_url, path, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.IntegrityError as exc:
            await self._db.rollback()
            raise _path_taken(path or "") from exc

        mapping = await self._select_one("id = ?", (mapping_id,))
        if mapping is None:
            raise RuntimeError(f"Mapping {mapping_id} vanished after upsert")
        return mapping

    async def get_or_create(self, source_url: str) -> Mapping:
        """Return the mapping for a source URL, creating one if none exists.

        Concurrent callers may both insert; both then return the earliest row,
        so later passes converge on one id.
        """
        existing = await self._select_one("source_url = ?", (source_url,))
        if existing is not None:
            return existing
        await self.upsert(source_url)
        mapping = await self._select_one("source_url = ?", (source_url,))
        if mapping is None:
            raise RuntimeError(f"Mapping for {source_url} vanished after insert")
        return mapping

    async def set_root(self, mapping_id: str) -> None:
        """Make ``mapping_id`` the only root mapping. No-op for unknown ids."""
        await self._db.execute(
            "UPDATE mappings SET is_root = CASE WHEN id = ? THEN 1 ELSE 0 END "
            "WHERE (is_root = 1 OR id = ?) "
            "AND EXISTS (SELECT 1 FROM mappings WHERE id = ?)",
            (mapping_id, mapping_id, mapping_id),
        )
        await self._db.commit()

    async def record_access(self, mapping_id: str) -> None:
        """Bump the access counter. Non-fatal on failure."""
        try:
            await self._db.execute(
                "UPDATE mappings SET access_count = access_count + 1, last_accessed_at = ? "
                "WHERE id = ?",
                (datetime.now(UTC).isoformat(), mapping_id),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("mapping_access_write_error", mapping_id=mapping_id, exc_info=True)

    async def delete(self, mapping_id: str) -> bool:
        cursor = await self._db.execute("DELETE FROM mappings WHERE id = ?", (mapping_id,))
        await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _select_one(self, where: str, params: tuple) -> Mapping | None:
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM mappings WHERE {where} ORDER BY created_at, rowid LIMIT 1",
            params,
        )
        row = await cursor.fetchone()
        return _row_to_mapping(row) if row is not None else None

    async def _read_one(self, where: str, params: tuple, *, key: str) -> Mapping | None:
        try:
            return await self._select_one(where, params)
        except aiosqlite.Error:
            log.warning("mapping_read_error", key=key, exc_info=True)
            return None


class MemoryMappingStore:
    """Process-local mapping store implementing MappingStoreProtocol.

    Not persistent. No method awaits between reading and writing the dict,
    so the single-threaded event loop keeps every operation atomic.
    """

    def __init__(self) -> None:
        # Insertion order doubles as creation order
        self._mappings: dict[str, Mapping] = {}

    async def get(self, mapping_id: str) -> Mapping | None:
        mapping = self._mappings.get(mapping_id)
        return mapping.model_copy() if mapping is not None else None

    async def get_by_path(self, path: str) -> Mapping | None:
        return self._first(lambda m: m.path == path)

    async def get_root(self) -> Mapping | None:
        return self._first(lambda m: m.is_root)

    async def find_by_source_url(self, source_url: str) -> Mapping | None:
        return self._first(lambda m: m.source_url == source_url)

    async def list_all(self) -> list[Mapping]:
        return [m.model_copy() for m in reversed(self._mappings.values())]

    async def upsert(
        self,
        source_url: str,
        *,
        mapping_id: str | None = None,
        path: str | None = None,
    ) -> Mapping:
        if path is not None:
            owner = self._first(lambda m: m.path == path)
            if owner is not None:
                if mapping_id is not None and owner.id != mapping_id:
                    raise _path_taken(path)
                mapping_id = owner.id
        mapping_id = mapping_id or new_mapping_id()

        existing = self._mappings.get(mapping_id)
        if existing is not None:
            existing.source_url = source_url
            if path is not None:
                existing.path = path
        else:
            self._mappings[mapping_id] = Mapping(
                id=mapping_id,
                source_url=source_url,
                path=path,
                created_at=datetime.now(UTC),
            )
        return self._mappings[mapping_id].model_copy()

    async def get_or_create(self, source_url: str) -> Mapping:
        existing = self._first(lambda m: m.source_url == source_url)
        if existing is not None:
            return existing
        return await self.upsert(source_url)

    async def set_root(self, mapping_id: str) -> None:
        if mapping_id not in self._mappings:
            return
        for mapping in self._mappings.values():
            mapping.is_root = mapping.id == mapping_id

    async def record_access(self, mapping_id: str) -> None:
        mapping = self._mappings.get(mapping_id)
        if mapping is not None:
            mapping.access_count += 1
            mapping.last_accessed_at = datetime.now(UTC)

    async def delete(self, mapping_id: str) -> bool:
        return self._mappings.pop(mapping_id, None) is not None

    def _first(self, predicate) -> Mapping | None:
        for mapping in self._mappings.values():
            if predicate(mapping):
                return mapping.model_copy()
        return None
