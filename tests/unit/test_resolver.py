"""Unit tests for notionproxy.resolver."""

from __future__ import annotations

import pytest

from notionproxy.config import UpstreamSettings
from notionproxy.errors import ErrorCode, ProxyError
from notionproxy.mappings import MemoryMappingStore
from notionproxy.resolver import resolve_path

HOME = "https://www.notion.so/Home-0123456789abcdef"
BLOG = "https://www.notion.so/Blog-fedcba9876543210"


@pytest.fixture()
def store() -> MemoryMappingStore:
    return MemoryMappingStore()


class TestRoot:
    async def test_root_mapping(self, store: MemoryMappingStore, upstream) -> None:
        mapping = await store.upsert(HOME)
        await store.set_root(mapping.id)

        resolution = await resolve_path("/", store, upstream)
        assert resolution.upstream_url == HOME
        assert resolution.kind == "page"
        assert resolution.mapping_id == mapping.id

    async def test_root_url_fallback(self, store: MemoryMappingStore) -> None:
        upstream = UpstreamSettings(root_url=BLOG)
        resolution = await resolve_path("/", store, upstream)
        assert resolution.upstream_url == BLOG
        assert resolution.mapping_id is None

    async def test_root_mapping_beats_root_url(self, store: MemoryMappingStore) -> None:
        mapping = await store.upsert(HOME)
        await store.set_root(mapping.id)
        resolution = await resolve_path("/", store, UpstreamSettings(root_url=BLOG))
        assert resolution.upstream_url == HOME

    async def test_no_root_is_not_found(self, store: MemoryMappingStore, upstream) -> None:
        with pytest.raises(ProxyError) as exc_info:
            await resolve_path("/", store, upstream)
        assert exc_info.value.code == ErrorCode.NOT_FOUND


class TestTransparentPath:
    async def test_exact_path(self, store: MemoryMappingStore, upstream) -> None:
        mapping = await store.upsert(BLOG, path="/blog")
        resolution = await resolve_path("/blog", store, upstream)
        assert resolution.upstream_url == BLOG
        assert resolution.mapping_id == mapping.id
        assert resolution.mapping_path == "/blog"

    async def test_path_match_is_exact(self, store: MemoryMappingStore, upstream) -> None:
        await store.upsert(BLOG, path="/blog")
        with pytest.raises(ProxyError):
            await resolve_path("/blog/", store, upstream)

    async def test_counts_access(self, store: MemoryMappingStore, upstream) -> None:
        mapping = await store.upsert(BLOG, path="/blog")
        await resolve_path("/blog", store, upstream)
        await resolve_path("/blog", store, upstream)
        assert (await store.get(mapping.id)).access_count == 2


class TestLegacyId:
    async def test_id_lookup(self, store: MemoryMappingStore, upstream) -> None:
        mapping = await store.upsert(HOME)
        resolution = await resolve_path(f"/p/{mapping.id}", store, upstream)
        assert resolution.upstream_url == HOME
        assert resolution.kind == "page"
        assert (await store.get(mapping.id)).access_count == 1

    async def test_unknown_id(self, store: MemoryMappingStore, upstream) -> None:
        with pytest.raises(ProxyError) as exc_info:
            await resolve_path("/p/doesnotexist", store, upstream)
        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert exc_info.value.status_code == 404


class TestAssetFallback:
    async def test_asset_suffix_goes_upstream(self, store: MemoryMappingStore, upstream) -> None:
        resolution = await resolve_path("/images/logo.png", store, upstream)
        assert resolution.kind == "asset"
        assert resolution.upstream_url == "https://www.notion.so/images/logo.png"
        assert resolution.mapping_id is None

    async def test_asset_keeps_query(self, store: MemoryMappingStore, upstream) -> None:
        resolution = await resolve_path("/front-static/x.css", store, upstream, query="v=3")
        assert resolution.upstream_url == "https://www.notion.so/front-static/x.css?v=3"

    async def test_raw_path_used_for_upstream_url(
        self, store: MemoryMappingStore, upstream
    ) -> None:
        raw = "/image/https%3A%2F%2Fprod.s3.amazonaws.com%2Fa%2Fb.png"
        resolution = await resolve_path(
            "/image/https://prod.s3.amazonaws.com/a/b.png",
            store,
            upstream,
            query="table=block",
            raw_path=raw,
        )
        assert resolution.upstream_url == f"https://www.notion.so{raw}?table=block"

    async def test_mapping_lookup_uses_decoded_path(
        self, store: MemoryMappingStore, upstream
    ) -> None:
        await store.upsert(BLOG, path="/café.png")
        resolution = await resolve_path("/café.png", store, upstream, raw_path="/caf%C3%A9.png")
        assert resolution.kind == "page"
        assert resolution.upstream_url == BLOG

    async def test_mapped_path_wins_over_suffix(
        self, store: MemoryMappingStore, upstream
    ) -> None:
        await store.upsert(BLOG, path="/feed.xml")
        resolution = await resolve_path("/feed.xml", store, upstream)
        assert resolution.kind == "page"
        assert resolution.upstream_url == BLOG

    async def test_unmatched_path_is_not_found(self, store: MemoryMappingStore, upstream) -> None:
        with pytest.raises(ProxyError) as exc_info:
            await resolve_path("/nothing-here", store, upstream)
        assert exc_info.value.code == ErrorCode.NOT_FOUND
