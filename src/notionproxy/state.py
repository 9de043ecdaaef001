"""Application state container.

AppState is created once at server startup (inside the Starlette lifespan)
and handed to every request handler.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from notionproxy.config import Settings
    from notionproxy.pipeline import Pipeline
    from notionproxy.protocols import FetcherProtocol
    from notionproxy.storage import Storage


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every request handler."""

    settings: Settings
    storage: Storage
    fetcher: FetcherProtocol
    pipeline: Pipeline
    http_client: httpx.AsyncClient | None = None
    started_at: float = field(default_factory=time.monotonic)
