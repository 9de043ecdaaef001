"""Handlers for raw asset passthrough.

Assets are never rewritten: bytes go out as fetched, with the corrected
content type, through the same cache as pages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.fetcher import is_cdn_url_allowed

if TYPE_CHECKING:
    from notionproxy.models.proxy import ProxyResponse
    from notionproxy.state import AppState


async def handle_upstream(path: str, query: str, state: AppState) -> ProxyResponse:
    """Serve ``/_assets/...`` and ``/assets/...`` from the upstream host.

    ``path`` must be the raw, still percent-encoded request path.
    """
    url = state.settings.upstream.base_url + path + (f"?{query}" if query else "")
    return await state.pipeline.serve(url, rewrite=False)


async def handle_cdn(url: str | None, state: AppState) -> ProxyResponse:
    """Serve an external CDN asset if its host is allow-listed.

    The allow-list check runs before anything else: a rejected host is never
    looked up in the cache or fetched.
    """
    log = structlog.get_logger().bind(handler="cdn_asset")

    if not url:
        raise ProxyError(
            code=ErrorCode.BAD_REQUEST,
            message="Missing 'url' query parameter",
            suggestion="Call /proxy/asset?url=<percent-encoded asset URL>.",
        )

    upstream = state.settings.upstream
    # page-domain hosts other than base_url (file.notion.so, *.notion.site) come here too
    allowed = (*upstream.cdn_host_suffixes, *upstream.page_domains)
    if not is_cdn_url_allowed(url, allowed):
        log.warning("cdn_host_blocked", url=url)
        raise ProxyError(
            code=ErrorCode.FORBIDDEN,
            message=f"Host not allowed: {url}",
            suggestion="Only assets from the upstream platform's CDNs can be proxied.",
        )

    return await state.pipeline.serve(url, rewrite=False)
