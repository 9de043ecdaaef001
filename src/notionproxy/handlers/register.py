"""Handler for POST /register."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.models.api import MappingView, RegisterInput

if TYPE_CHECKING:
    from notionproxy.models.mapping import Mapping
    from notionproxy.state import AppState


def mapping_view(mapping: Mapping, base_url: str) -> MappingView:
    """Build the client-facing view of a mapping, with absolute URLs."""
    transparent_url = None
    if mapping.is_root:
        transparent_url = f"{base_url}/"
    elif mapping.path:
        transparent_url = f"{base_url}{mapping.path}"
    return MappingView(
        id=mapping.id,
        source_url=mapping.source_url,
        path=mapping.path,
        is_root=mapping.is_root,
        proxy_url=f"{base_url}/p/{mapping.id}",
        transparent_url=transparent_url,
        access_count=mapping.access_count,
        last_accessed_at=mapping.last_accessed_at,
        created_at=mapping.created_at,
    )


async def handle(body: object, base_url: str, state: AppState) -> dict:
    """Create or update a mapping and return its proxy URLs."""
    log = structlog.get_logger().bind(handler="register")

    if not isinstance(body, dict):
        raise ProxyError(
            code=ErrorCode.BAD_REQUEST,
            message="Request body must be a JSON object",
            suggestion='Send {"sourceUrl": "...", "path": "/optional", "isRoot": false}.',
        )
    try:
        validated = RegisterInput.model_validate(body)
    except ValidationError as exc:
        raise ProxyError(
            code=ErrorCode.BAD_REQUEST,
            message=str(exc),
            suggestion="Provide an http(s) sourceUrl and, optionally, a path starting with '/'.",
        ) from exc

    mappings = state.storage.mappings
    mapping = await mappings.upsert(validated.source_url, path=validated.path)
    if validated.is_root:
        await mappings.set_root(mapping.id)
        mapping = await mappings.get(mapping.id) or mapping.model_copy(update={"is_root": True})

    log.info(
        "mapping_registered",
        mapping_id=mapping.id,
        source_url=mapping.source_url,
        path=mapping.path,
        is_root=mapping.is_root,
    )
    return mapping_view(mapping, base_url).model_dump(mode="json", by_alias=True)
