from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True)
class FetchResult:
    """Successful upstream response, reduced to what the proxy keeps."""

    status: int
    content_type: str
    headers: dict[str, str]
    payload: bytes


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving an inbound request path."""

    upstream_url: str
    kind: Literal["page", "asset"]
    # Mapping id when a mapping matched; used for page-specific head snippets
    mapping_id: str | None = None
    mapping_path: str | None = None


@dataclass(frozen=True)
class ProxyResponse:
    """Payload ready to be sent to the client."""

    content_type: str
    payload: bytes
    headers: dict[str, str] = field(default_factory=dict)
    cache_hit: bool = False
