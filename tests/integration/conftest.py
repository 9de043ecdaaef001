"""Integration test fixtures.

Provides a fully wired AppState with in-memory SQLite stores and a real
httpx client (upstream traffic is mocked with respx), plus an ASGI client
for the Starlette app built around it.
"""

from __future__ import annotations

import aiosqlite
import httpx
import pytest

from notionproxy.cache import SqliteCacheStore
from notionproxy.config import (
    HeadSettings,
    ServerSettings,
    Settings,
    StoreSettings,
    UpstreamSettings,
)
from notionproxy.fetcher import Fetcher
from notionproxy.mappings import SqliteMappingStore
from notionproxy.pipeline import Pipeline
from notionproxy.server import create_app
from notionproxy.state import AppState
from notionproxy.storage import Storage

ADMIN_KEY = "s3cret"
HEAD_SNIPPET = '<meta name="proxied-by" content="notionproxy">'


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        server=ServerSettings(admin_key=ADMIN_KEY),
        upstream=UpstreamSettings(
            base_url="https://www.notion.so",
            cdn_host_suffixes=["amazonaws.com", "notion-static.com"],
            auto_discover_links=True,
        ),
        store=StoreSettings(enabled=False),
        head=HeadSettings(global_snippets=[HEAD_SNIPPET]),
    )


@pytest.fixture()
async def app_state(settings: Settings) -> AppState:
    """Full AppState for route tests."""
    async with aiosqlite.connect(":memory:") as db:
        mappings = SqliteMappingStore(db)
        cache = SqliteCacheStore(db)
        await mappings.init_db()
        await cache.init_db()
        # db is closed by the context manager, not by Storage.close()
        storage = Storage(mappings=mappings, cache=cache, backend="sqlite")

        async with httpx.AsyncClient() as http_client:
            fetcher = Fetcher(http_client)
            pipeline = Pipeline(
                settings=settings,
                cache=cache,
                mappings=mappings,
                fetcher=fetcher,
            )
            state = AppState(
                settings=settings,
                storage=storage,
                fetcher=fetcher,
                pipeline=pipeline,
                http_client=http_client,
            )
            yield state
            await pipeline.drain()


@pytest.fixture()
async def client(app_state: AppState) -> httpx.AsyncClient:
    app = create_app(state=app_state)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as test_client:
        yield test_client
