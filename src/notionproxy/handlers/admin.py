"""Handlers for listing, cache administration, deletion and health."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog

from notionproxy import __version__
from notionproxy.cache import CACHE_TTL
from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.handlers.register import mapping_view
from notionproxy.models.api import CacheStatsView

if TYPE_CHECKING:
    from notionproxy.state import AppState

log = structlog.get_logger()


async def list_mappings(base_url: str, state: AppState) -> dict:
    mappings = await state.storage.mappings.list_all()
    return {
        "persistent": state.storage.persistent,
        "count": len(mappings),
        "entries": [
            mapping_view(m, base_url).model_dump(mode="json", by_alias=True) for m in mappings
        ],
    }


async def delete_mapping(mapping_id: str, state: AppState) -> dict:
    deleted = await state.storage.mappings.delete(mapping_id)
    if not deleted:
        raise ProxyError(
            code=ErrorCode.NOT_FOUND,
            message=f"No mapping with id {mapping_id}",
            suggestion="List existing mappings with GET /list.",
        )
    log.info("mapping_deleted", mapping_id=mapping_id)
    return {"deleted": mapping_id}


async def cache_stats(state: AppState) -> dict:
    stats = await state.storage.cache.stats()
    view = CacheStatsView(
        **stats.model_dump(),
        ttl_seconds=int(CACHE_TTL.total_seconds()),
    )
    return view.model_dump(mode="json", by_alias=True)


async def cache_clear(state: AppState) -> dict:
    cleared = await state.storage.cache.clear()
    return {"cleared": cleared}


def health(state: AppState) -> dict:
    return {
        "status": "healthy",
        "version": __version__,
        "uptime_seconds": round(time.monotonic() - state.started_at, 3),
        "storage": state.storage.backend,
        "persistent": state.storage.persistent,
    }
