"""Inbound path resolution.

Maps a request path to the upstream URL it stands for. Receives the mapping
store through its protocol; no knowledge of HTTP routing or the cache.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.mime import asset_type_for_path
from notionproxy.models.proxy import Resolution

if TYPE_CHECKING:
    from notionproxy.config import UpstreamSettings
    from notionproxy.models.mapping import Mapping
    from notionproxy.protocols import MappingStoreProtocol

log = structlog.get_logger()

LEGACY_PREFIX = "/p/"


async def resolve_path(
    path: str,
    mappings: MappingStoreProtocol,
    upstream: UpstreamSettings,
    *,
    query: str = "",
    raw_path: str | None = None,
) -> Resolution:
    """Resolve ``path`` using the 5-step algorithm.

    ``path`` is the decoded request path used for mapping lookups. Upstream
    asset URLs are built from ``raw_path`` (the path as sent, percent-encoding
    intact) when given, so ``%2F`` and friends reach the upstream unchanged.

    Steps are tried in order and the first hit wins:
      1. "/"            → root mapping, else the configured root URL
      2. exact path     → mapping registered under that path
      3. "/p/<id>"      → mapping with that id
      4. asset suffix   → same path on the upstream host, no mapping involved
      5. no match       → ProxyError(NOT_FOUND)

    Steps 1-3 count an access against the matched mapping.
    """
    # Step 1: root
    if path == "/":
        root = await mappings.get_root()
        if root is not None:
            return await _from_mapping(root, mappings)
        if upstream.root_url:
            return Resolution(upstream_url=upstream.root_url, kind="page")

    # Step 2: transparent path
    else:
        mapping = await mappings.get_by_path(path)
        if mapping is not None:
            return await _from_mapping(mapping, mappings)

    # Step 3: legacy id
    if path.startswith(LEGACY_PREFIX):
        mapping_id = path[len(LEGACY_PREFIX) :].strip("/")
        if mapping_id and "/" not in mapping_id:
            mapping = await mappings.get(mapping_id)
            if mapping is not None:
                return await _from_mapping(mapping, mappings)

    # Step 4: static asset on the upstream host
    if asset_type_for_path(path) is not None:
        upstream_path = raw_path or path
        upstream_url = upstream.base_url + upstream_path + (f"?{query}" if query else "")
        return Resolution(upstream_url=upstream_url, kind="asset")

    # Step 5: no match
    log.info("resolve_not_found", path=path)
    raise ProxyError(
        code=ErrorCode.NOT_FOUND,
        message=f"No page registered for {path}",
        suggestion="Register the page with POST /register or check the link.",
    )


async def _from_mapping(mapping: Mapping, mappings: MappingStoreProtocol) -> Resolution:
    await mappings.record_access(mapping.id)
    return Resolution(
        upstream_url=mapping.source_url,
        kind="page",
        mapping_id=mapping.id,
        mapping_path=mapping.path,
    )
