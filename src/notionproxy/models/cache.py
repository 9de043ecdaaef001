from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class CacheEntry(BaseModel):
    """Cached upstream payload, keyed by the exact upstream URL."""

    url: str
    content_type: str
    payload: bytes  # HTML after rewriting, or raw asset bytes
    headers: dict[str, str] = {}  # Allow-listed upstream headers only
    cached_at: datetime
    expires_at: datetime
    hit_count: int = 0


class CacheStats(BaseModel):
    """Aggregate over live (unexpired) cache entries."""

    total_cached: int = 0
    total_hits: int = 0
    total_bytes: int = 0
    oldest_cached_at: datetime | None = None
    newest_cached_at: datetime | None = None
