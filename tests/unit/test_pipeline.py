"""Unit tests for notionproxy.pipeline."""

from __future__ import annotations

import pytest
from bs4 import BeautifulSoup

from notionproxy.cache import MemoryCacheStore
from notionproxy.config import HeadSettings, Settings, StoreSettings, UpstreamSettings
from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.mappings import MemoryMappingStore
from notionproxy.models.proxy import FetchResult, Resolution
from notionproxy.pipeline import HTML_CONTENT_TYPE, Pipeline

PAGE_URL = "https://www.notion.so/Home-abc"
ASSET_URL = "https://www.notion.so/_assets/app.js"

PAGE_HTML = (
    "<html><head><title>Home</title></head><body>"
    '<script src="https://www.notion.so/_assets/app.js"></script>'
    '<a href="https://www.notion.so/Child-1?pvs=4">child</a>'
    "</body></html>"
)


class FakeFetcher:
    """Returns canned results and records every URL requested."""

    def __init__(self, responses: dict[str, FetchResult | ProxyError]) -> None:
        self.responses = responses
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        result = self.responses[url]
        if isinstance(result, ProxyError):
            raise result
        return result


class FailingMappings(MemoryMappingStore):
    async def get_or_create(self, source_url: str):
        raise RuntimeError("store offline")


class FailingCache(MemoryCacheStore):
    async def put(self, url, content_type, payload, headers) -> None:
        raise RuntimeError("disk full")


def _html(body: str = PAGE_HTML, content_type: str = "text/html; charset=utf-8") -> FetchResult:
    return FetchResult(
        status=200,
        content_type=content_type,
        headers={"etag": "v1"},
        payload=body.encode("utf-8"),
    )


def _settings(**upstream) -> Settings:
    return Settings(
        upstream=UpstreamSettings(**upstream),
        store=StoreSettings(enabled=False),
        head=HeadSettings(
            global_snippets=['<meta name="global" content="1">'],
            page_snippets={
                "/blog": ['<meta name="by-path" content="1">'],
                "blogid0001": ['<meta name="by-id" content="1">'],
            },
        ),
    )


def _pipeline(fetcher, *, cache=None, mappings=None, **upstream) -> Pipeline:
    return Pipeline(
        settings=_settings(**upstream),
        cache=cache if cache is not None else MemoryCacheStore(),
        mappings=mappings if mappings is not None else MemoryMappingStore(),
        fetcher=fetcher,
    )


# ---------------------------------------------------------------------------
# Cache behaviour
# ---------------------------------------------------------------------------


class TestCaching:
    async def test_miss_then_hit(self) -> None:
        fetcher = FakeFetcher({PAGE_URL: _html()})
        pipeline = _pipeline(fetcher)

        first = await pipeline.serve(PAGE_URL)
        await pipeline.drain()
        second = await pipeline.serve(PAGE_URL)

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.payload == first.payload
        assert second.content_type == first.content_type
        assert second.headers == {"etag": "v1"}
        assert fetcher.calls == [PAGE_URL]

    async def test_cached_page_is_already_rewritten(self) -> None:
        fetcher = FakeFetcher({PAGE_URL: _html()})
        pipeline = _pipeline(fetcher)
        await pipeline.serve(PAGE_URL)
        await pipeline.drain()

        hit = await pipeline.serve(PAGE_URL)
        assert b'src="/_assets/app.js"' in hit.payload

    async def test_fetch_failure_propagates_and_caches_nothing(self) -> None:
        error = ProxyError(ErrorCode.FETCH_FAILED, "HTTP 404", upstream_status=404)
        cache = MemoryCacheStore()
        pipeline = _pipeline(FakeFetcher({PAGE_URL: error}), cache=cache)

        with pytest.raises(ProxyError) as exc_info:
            await pipeline.serve(PAGE_URL)
        await pipeline.drain()

        assert exc_info.value.status_code == 404
        assert (await cache.stats()).total_cached == 0

    async def test_cache_write_failure_still_serves(self) -> None:
        pipeline = _pipeline(FakeFetcher({PAGE_URL: _html()}), cache=FailingCache())
        result = await pipeline.serve(PAGE_URL)
        await pipeline.drain()
        assert result.cache_hit is False
        assert b"<title>Home</title>" in result.payload

    async def test_drain_with_nothing_pending(self) -> None:
        await _pipeline(FakeFetcher({})).drain()


# ---------------------------------------------------------------------------
# Rewriting
# ---------------------------------------------------------------------------


class TestRewriting:
    async def test_html_page_is_rewritten(self) -> None:
        pipeline = _pipeline(FakeFetcher({PAGE_URL: _html()}))
        result = await pipeline.serve(PAGE_URL)
        soup = BeautifulSoup(result.payload, "lxml")

        assert result.content_type == HTML_CONTENT_TYPE
        assert soup.find("script")["src"] == "/_assets/app.js"
        assert soup.find("meta", attrs={"name": "global"}) is not None

    async def test_asset_is_not_rewritten(self) -> None:
        js = FetchResult(
            status=200,
            content_type="application/javascript",
            headers={},
            payload=b'fetch("https://www.notion.so/_assets/x.js")',
        )
        pipeline = _pipeline(FakeFetcher({ASSET_URL: js}))
        result = await pipeline.serve(ASSET_URL, rewrite=False)
        assert result.payload == js.payload
        assert result.content_type == "application/javascript"

    async def test_html_served_as_asset_passes_through(self) -> None:
        pipeline = _pipeline(FakeFetcher({PAGE_URL: _html()}))
        result = await pipeline.serve(PAGE_URL, rewrite=False)
        assert result.payload == PAGE_HTML.encode("utf-8")

    async def test_non_utf8_charset_decoded(self) -> None:
        body = "<html><head></head><body><p>café</p></body></html>"
        fetched = FetchResult(
            status=200,
            content_type="text/html; charset=iso-8859-1",
            headers={},
            payload=body.encode("iso-8859-1"),
        )
        pipeline = _pipeline(FakeFetcher({PAGE_URL: fetched}))
        result = await pipeline.serve(PAGE_URL)
        assert "café" in result.payload.decode("utf-8")

    async def test_unknown_charset_falls_back_to_utf8(self) -> None:
        body = "<html><head></head><body><p>café</p></body></html>"
        fetched = FetchResult(
            status=200,
            content_type="text/html; charset=x-bogus",
            headers={},
            payload=body.encode("utf-8"),
        )
        pipeline = _pipeline(FakeFetcher({PAGE_URL: fetched}))
        result = await pipeline.serve(PAGE_URL)
        assert result.content_type == HTML_CONTENT_TYPE
        assert "café" in result.payload.decode("utf-8")

    async def test_serve_resolution_page_vs_asset(self) -> None:
        fetcher = FakeFetcher({PAGE_URL: _html(), ASSET_URL: _html()})
        pipeline = _pipeline(fetcher)

        page = await pipeline.serve_resolution(Resolution(upstream_url=PAGE_URL, kind="page"))
        asset = await pipeline.serve_resolution(Resolution(upstream_url=ASSET_URL, kind="asset"))

        assert page.payload != PAGE_HTML.encode("utf-8")
        assert asset.payload == PAGE_HTML.encode("utf-8")


class TestHeadSnippets:
    def test_rewrite_options_carry_global_only(self) -> None:
        options = _pipeline(FakeFetcher({})).rewrite_options()
        assert options.head_snippets == ('<meta name="global" content="1">',)

    def test_page_snippets_id_then_path(self) -> None:
        snippets = _pipeline(FakeFetcher({})).page_snippets(
            mapping_id="blogid0001", mapping_path="/blog"
        )
        assert snippets == ('<meta name="by-id" content="1">', '<meta name="by-path" content="1">')

    def test_upstream_host_from_base_url(self) -> None:
        options = _pipeline(FakeFetcher({}), base_url="https://acme.notion.site/").rewrite_options()
        assert options.upstream_host == "acme.notion.site"

    async def test_served_page_has_global_then_id_then_path(self) -> None:
        pipeline = _pipeline(FakeFetcher({PAGE_URL: _html()}))
        result = await pipeline.serve(PAGE_URL, mapping_id="blogid0001", mapping_path="/blog")

        soup = BeautifulSoup(result.payload, "lxml")
        names = [meta["name"] for meta in soup.head.find_all("meta")]
        assert names == ["global", "by-id", "by-path"]

    async def test_page_snippets_not_shared_through_cache(self) -> None:
        cache = MemoryCacheStore()
        fetcher = FakeFetcher({PAGE_URL: _html()})
        pipeline = _pipeline(fetcher, cache=cache)

        blog = await pipeline.serve(PAGE_URL, mapping_id="blogid0001", mapping_path="/blog")
        await pipeline.drain()
        other = await pipeline.serve(PAGE_URL, mapping_id="otherid001", mapping_path="/other")
        blog_again = await pipeline.serve(PAGE_URL, mapping_id="blogid0001", mapping_path="/blog")

        assert fetcher.calls == [PAGE_URL]
        assert other.cache_hit and blog_again.cache_hit
        assert b"by-id" in blog.payload
        assert b"by-id" not in other.payload
        assert b"by-path" not in other.payload
        assert b'name="global"' in other.payload
        assert blog_again.payload.count(b"by-id") == 1

        cached = await cache.get(PAGE_URL)
        assert b"by-id" not in cached.payload
        assert b'name="global"' in cached.payload

    async def test_assets_get_no_page_snippets(self) -> None:
        pipeline = _pipeline(FakeFetcher({ASSET_URL: _html()}))
        result = await pipeline.serve(ASSET_URL, rewrite=False, mapping_id="blogid0001")
        assert result.payload == PAGE_HTML.encode("utf-8")



# ---------------------------------------------------------------------------
# Link auto-discovery
# ---------------------------------------------------------------------------


class TestLinkDiscovery:
    async def test_disabled_leaves_links(self) -> None:
        mappings = MemoryMappingStore()
        pipeline = _pipeline(FakeFetcher({PAGE_URL: _html()}), mappings=mappings)
        result = await pipeline.serve(PAGE_URL)

        assert b"https://www.notion.so/Child-1?pvs=4" in result.payload
        assert await mappings.list_all() == []

    async def test_enabled_registers_and_rewrites(self) -> None:
        mappings = MemoryMappingStore()
        pipeline = _pipeline(
            FakeFetcher({PAGE_URL: _html()}), mappings=mappings, auto_discover_links=True
        )
        result = await pipeline.serve(PAGE_URL)

        mapping = await mappings.find_by_source_url("https://www.notion.so/Child-1")
        assert mapping is not None
        soup = BeautifulSoup(result.payload, "lxml")
        assert soup.find("a")["href"] == f"/p/{mapping.id}"

    async def test_existing_mapping_path_reused(self) -> None:
        mappings = MemoryMappingStore()
        await mappings.upsert("https://www.notion.so/Child-1", path="/child")
        pipeline = _pipeline(
            FakeFetcher({PAGE_URL: _html()}), mappings=mappings, auto_discover_links=True
        )
        result = await pipeline.serve(PAGE_URL)

        soup = BeautifulSoup(result.payload, "lxml")
        assert soup.find("a")["href"] == "/child"
        assert len(await mappings.list_all()) == 1

    async def test_registration_failure_keeps_page(self) -> None:
        pipeline = _pipeline(
            FakeFetcher({PAGE_URL: _html()}),
            mappings=FailingMappings(),
            auto_discover_links=True,
        )
        result = await pipeline.serve(PAGE_URL)
        soup = BeautifulSoup(result.payload, "lxml")
        assert soup.find("a")["href"] == "https://www.notion.so/Child-1?pvs=4"
