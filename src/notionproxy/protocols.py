"""Protocol interfaces for swappable components.

Handlers, the resolver and the pipeline reference these protocols, not the
concrete implementations. Storage is chosen once at startup (SQLite or the
in-memory fallback) and injected; nothing downstream branches on which one
is in use.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from notionproxy.models.cache import CacheEntry, CacheStats
    from notionproxy.models.mapping import Mapping
    from notionproxy.models.proxy import FetchResult


class MappingStoreProtocol(Protocol):
    """Interface for the id/path → source URL mapping store."""

    async def get(self, mapping_id: str) -> Mapping | None: ...

    async def get_by_path(self, path: str) -> Mapping | None: ...

    async def get_root(self) -> Mapping | None: ...

    async def find_by_source_url(self, source_url: str) -> Mapping | None: ...

    async def list_all(self) -> list[Mapping]: ...

    async def upsert(
        self,
        source_url: str,
        *,
        mapping_id: str | None = None,
        path: str | None = None,
    ) -> Mapping: ...

    async def get_or_create(self, source_url: str) -> Mapping: ...

    async def set_root(self, mapping_id: str) -> None: ...

    async def record_access(self, mapping_id: str) -> None: ...

    async def delete(self, mapping_id: str) -> bool: ...


class CacheStoreProtocol(Protocol):
    """Interface for the TTL-bounded upstream payload cache."""

    async def get(self, url: str) -> CacheEntry | None: ...

    async def put(
        self,
        url: str,
        content_type: str,
        payload: bytes,
        headers: dict[str, str],
    ) -> None: ...

    async def stats(self) -> CacheStats: ...

    async def clear(self) -> int: ...


class FetcherProtocol(Protocol):
    """Interface for the upstream HTTP fetcher."""

    async def fetch(self, url: str) -> FetchResult: ...
