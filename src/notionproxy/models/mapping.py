from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class Mapping(BaseModel):
    """Externally visible id/path pointing at an upstream page."""

    id: str
    source_url: str
    path: str | None = None  # Transparent path, always starts with "/"
    is_root: bool = False
    access_count: int = 0
    last_accessed_at: datetime | None = None
    created_at: datetime

    @property
    def proxy_path(self) -> str:
        """Same-origin path a rewritten link should point at."""
        return self.path or f"/p/{self.id}"
