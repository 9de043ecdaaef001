"""Upstream HTTP fetcher.

All network I/O for pages and assets goes through a single Fetcher instance
shared across requests. The Fetcher receives an httpx.AsyncClient via
constructor injection. The lifespan owns the client lifecycle.

One attempt per request: failures propagate as ``ProxyError(FETCH_FAILED)``
and are never retried here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

import httpx
import structlog

from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.mime import correct_content_type
from notionproxy.models.proxy import FetchResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from notionproxy.config import UpstreamSettings

log = structlog.get_logger()

BROWSER_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

# Only these upstream headers are forwarded to clients and persisted in the cache
FORWARDED_HEADERS: frozenset[str] = frozenset(
    {
        "cache-control",
        "etag",
        "last-modified",
        "expires",
        "vary",
        "access-control-allow-origin",
        "access-control-allow-methods",
        "access-control-allow-headers",
        "access-control-expose-headers",
        "access-control-max-age",
        "access-control-allow-credentials",
    }
)


def build_http_client(upstream: UpstreamSettings | None = None) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    timeout = upstream.timeout_seconds if upstream is not None else 30.0
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout),
        headers=BROWSER_HEADERS,
        limits=httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
        ),
    )


def filter_headers(headers: httpx.Headers) -> dict[str, str]:
    """Keep the allow-listed headers, lowercased."""
    return {
        name.lower(): value
        for name, value in headers.items()
        if name.lower() in FORWARDED_HEADERS
    }


def host_matches(hostname: str, suffixes: Iterable[str]) -> bool:
    """True if ``hostname`` equals or is a subdomain of any suffix."""
    hostname = hostname.rstrip(".").lower()
    return any(hostname == s.lower() or hostname.endswith("." + s.lower()) for s in suffixes)


def is_cdn_url_allowed(url: str, suffixes: Iterable[str]) -> bool:
    """Check whether a URL may be fetched through the CDN passthrough.

    Only http(s) URLs whose host equals or is a subdomain of an allow-listed
    suffix qualify.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    return host_matches(parsed.hostname or "", suffixes)


def is_page_domain(url: str, page_domains: Iterable[str]) -> bool:
    """True for absolute http(s) URLs on one of the upstream page domains."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    return host_matches(parsed.hostname or "", page_domains)


class Fetcher:
    """Single-attempt upstream fetcher with browser-like request headers."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(self, url: str) -> FetchResult:
        """GET ``url`` and return the payload with a corrected content type.

        Raises ProxyError(FETCH_FAILED) on network errors and non-2xx
        responses; the upstream status is carried so the caller can mirror it.
        """
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            log.warning("fetch_transport_error", url=url, error=str(exc))
            raise ProxyError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Network error fetching {url}: {exc}",
                suggestion="The upstream site may be temporarily unavailable.",
            ) from exc

        if not response.is_success:
            log.warning("fetch_upstream_error", url=url, status_code=response.status_code)
            raise ProxyError(
                code=ErrorCode.FETCH_FAILED,
                message=f"HTTP {response.status_code} fetching {url}",
                suggestion="The upstream page may have moved or been unpublished.",
                upstream_status=response.status_code,
            )

        content_type = correct_content_type(url, response.headers.get("content-type", ""))
        payload = response.content
        log.info(
            "fetch_complete",
            url=url,
            status_code=response.status_code,
            content_type=content_type,
            content_length=len(payload),
        )
        return FetchResult(
            status=response.status_code,
            content_type=content_type,
            headers=filter_headers(response.headers),
            payload=payload,
        )
