from __future__ import annotations

import re
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Paths owned by the router; a mapping may not shadow them
RESERVED_PREFIXES = ("/p/", "/_assets/", "/assets/", "/proxy/", "/cache/", "/mappings/")
RESERVED_PATHS = frozenset(
    {"/register", "/list", "/health", "/cache", "/mappings", "/proxy", "/p", "/_assets", "/assets"}
)

_URL_RE = re.compile(r"^https?://[^\s/]+")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterInput(_CamelModel):
    # "notionUrl" is still accepted from older clients
    source_url: str = Field(validation_alias=AliasChoices("sourceUrl", "source_url", "notionUrl"))
    path: str | None = None
    is_root: bool = False

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, v: str) -> str:
        v = v.strip()
        if len(v) > 2048 or not _URL_RE.match(v):
            raise ValueError("sourceUrl must be an absolute http(s) URL of at most 2048 characters")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not v.startswith("/"):
            raise ValueError("path must begin with '/'")
        if v == "/":
            raise ValueError("path '/' is reserved for the root page; use isRoot instead")
        if any(c.isspace() for c in v) or "?" in v or "#" in v:
            raise ValueError("path must not contain whitespace, '?' or '#'")
        if v in RESERVED_PATHS or v.startswith(RESERVED_PREFIXES):
            raise ValueError(f"path {v!r} collides with a reserved route")
        return v


class MappingView(_CamelModel):
    """A mapping as shown to API clients."""

    id: str
    source_url: str
    path: str | None
    is_root: bool
    proxy_url: str
    transparent_url: str | None = None
    access_count: int = 0
    last_accessed_at: datetime | None = None
    created_at: datetime


class CacheStatsView(_CamelModel):
    total_cached: int
    total_hits: int
    total_bytes: int
    oldest_cached_at: datetime | None
    newest_cached_at: datetime | None
    ttl_seconds: int
