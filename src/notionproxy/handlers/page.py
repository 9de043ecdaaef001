"""Handler for proxied pages: "/", transparent paths and legacy "/p/<id>" links.

Receives AppState, resolves the path, and runs the result through the
pipeline. No Starlette imports; server.py handles the HTTP wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from notionproxy.resolver import resolve_path

if TYPE_CHECKING:
    from notionproxy.models.proxy import ProxyResponse
    from notionproxy.state import AppState


async def handle(
    path: str, query: str, state: AppState, *, raw_path: str | None = None
) -> ProxyResponse:
    """Serve the upstream page (or asset) behind ``path``."""
    log = structlog.get_logger().bind(handler="page", path=path)

    resolution = await resolve_path(
        path,
        state.storage.mappings,
        state.settings.upstream,
        query=query,
        raw_path=raw_path,
    )
    log.info(
        "path_resolved",
        kind=resolution.kind,
        upstream_url=resolution.upstream_url,
        mapping_id=resolution.mapping_id,
    )
    return await state.pipeline.serve_resolution(resolution)
