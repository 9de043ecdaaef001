"""Proxy pipeline: cache lookup → upstream fetch → rewrite → background cache write.

Shared by every route that serves upstream content. The cache write happens
in a background task so the response never waits on it; there is no lock
around check-fetch-write, so two concurrent cold misses for one URL both
fetch and the last write wins.

The cache is keyed by upstream URL alone, while several mappings may point at
the same URL. Cached HTML therefore only carries the global head snippets;
snippets keyed by mapping id or path are inserted per request, after the
cache read.
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

from notionproxy.mime import is_html
from notionproxy.models.proxy import ProxyResponse
from notionproxy.rewriter import (
    RewriteOptions,
    discover_page_links,
    insert_head_snippets,
    rewrite_html,
)

if TYPE_CHECKING:
    from notionproxy.config import Settings
    from notionproxy.models.proxy import FetchResult, Resolution
    from notionproxy.protocols import CacheStoreProtocol, FetcherProtocol, MappingStoreProtocol

log = structlog.get_logger()

HTML_CONTENT_TYPE = "text/html; charset=utf-8"


def _charset(content_type: str) -> str:
    """Charset named in ``content_type``; UTF-8 when absent or unknown to Python."""
    for param in content_type.split(";")[1:]:
        name, _, value = param.strip().partition("=")
        if name.lower() == "charset" and value:
            charset = value.strip("\"'")
            try:
                codecs.lookup(charset)
            except LookupError:
                log.warning("unknown_charset", charset=charset)
                return "utf-8"
            return charset
    return "utf-8"


class Pipeline:
    """Serves upstream URLs through the cache, rewriting HTML pages on the way."""

    def __init__(
        self,
        *,
        settings: Settings,
        cache: CacheStoreProtocol,
        mappings: MappingStoreProtocol,
        fetcher: FetcherProtocol,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._mappings = mappings
        self._fetcher = fetcher
        self._upstream_host = urlparse(settings.upstream.base_url).hostname or ""
        self._background: set[asyncio.Task[None]] = set()

    async def serve_resolution(self, resolution: Resolution) -> ProxyResponse:
        return await self.serve(
            resolution.upstream_url,
            rewrite=resolution.kind == "page",
            mapping_id=resolution.mapping_id,
            mapping_path=resolution.mapping_path,
        )

    async def serve(
        self,
        url: str,
        *,
        rewrite: bool = True,
        mapping_id: str | None = None,
        mapping_path: str | None = None,
    ) -> ProxyResponse:
        """Return the payload for ``url``, from cache when fresh.

        Raises ProxyError(FETCH_FAILED) when the upstream fetch fails.
        """
        bound = log.bind(url=url)

        cached = await self._cache.get(url)
        if cached is not None:
            bound.info("cache_hit", hit_count=cached.hit_count)
            response = ProxyResponse(
                content_type=cached.content_type,
                payload=cached.payload,
                headers=cached.headers,
                cache_hit=True,
            )
        else:
            bound.info("cache_miss_fetching")
            result = await self._fetcher.fetch(url)

            content_type = result.content_type
            payload = result.payload
            if rewrite and is_html(content_type):
                payload = await self._rewrite(result)
                content_type = HTML_CONTENT_TYPE

            self._schedule_cache_write(url, content_type, payload, result.headers)
            response = ProxyResponse(
                content_type=content_type,
                payload=payload,
                headers=result.headers,
                cache_hit=False,
            )

        if rewrite and is_html(response.content_type):
            snippets = self.page_snippets(mapping_id=mapping_id, mapping_path=mapping_path)
            if snippets:
                html = response.payload.decode(_charset(response.content_type), errors="replace")
                response = dataclasses.replace(
                    response,
                    content_type=HTML_CONTENT_TYPE,
                    payload=insert_head_snippets(html, snippets).encode("utf-8"),
                )
        return response

    async def drain(self) -> None:
        """Wait for pending background cache writes. Used at shutdown and in tests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Rewriting
    # ------------------------------------------------------------------

    def rewrite_options(self) -> RewriteOptions:
        upstream = self._settings.upstream
        return RewriteOptions(
            upstream_host=self._upstream_host,
            page_domains=tuple(upstream.page_domains),
            cdn_host_suffixes=tuple(upstream.cdn_host_suffixes),
            head_snippets=tuple(self._settings.head.global_snippets),
        )

    def page_snippets(
        self, *, mapping_id: str | None = None, mapping_path: str | None = None
    ) -> tuple[str, ...]:
        """Head snippets keyed by mapping id, then by mapping path."""
        page_snippets = self._settings.head.page_snippets
        snippets: list[str] = []
        for key in (mapping_id, mapping_path):
            if key is not None:
                snippets.extend(page_snippets.get(key, []))
        return tuple(snippets)

    async def _rewrite(self, result: FetchResult) -> bytes:
        html = result.payload.decode(_charset(result.content_type), errors="replace")
        options = self.rewrite_options()

        link_targets: dict[str, str] = {}
        if self._settings.upstream.auto_discover_links:
            link_targets = await self._register_links(html, options.page_domains)

        return rewrite_html(html, options, link_targets).encode("utf-8")

    async def _register_links(self, html: str, page_domains: tuple[str, ...]) -> dict[str, str]:
        """Look up or create a mapping for every upstream page link in ``html``."""
        targets: dict[str, str] = {}
        for link in discover_page_links(html, page_domains):
            try:
                mapping = await self._mappings.get_or_create(link)
            except Exception:
                # Leave the link pointing upstream; the page itself still renders.
                log.warning("link_discovery_failed", link=link, exc_info=True)
                continue
            targets[link] = mapping.proxy_path
            log.debug("link_discovered", link=link, mapping_id=mapping.id)
        if targets:
            log.info("links_discovered", count=len(targets))
        return targets

    # ------------------------------------------------------------------
    # Background cache writes
    # ------------------------------------------------------------------

    def _schedule_cache_write(
        self, url: str, content_type: str, payload: bytes, headers: dict[str, str]
    ) -> None:
        task = asyncio.create_task(self._write_cache(url, content_type, payload, headers))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_cache(
        self, url: str, content_type: str, payload: bytes, headers: dict[str, str]
    ) -> None:
        """Fire-and-forget. Exceptions are caught and logged."""
        try:
            await self._cache.put(url, content_type, payload, headers)
        except Exception:
            log.warning("cache_write_failed", url=url, exc_info=True)
