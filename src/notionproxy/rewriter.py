"""HTML rewriting for proxied pages.

Pure functions: HTML in, HTML out. No knowledge of storage or the network:
link auto-discovery is split into ``discover_page_links`` (what to register)
and the ``link_targets`` argument of ``rewrite_html`` (where each link now
points), and the pipeline does the registering in between.

All edits go through the parsed DOM so attribute quoting and escaping stay
with the serializer. Regexes only ever touch CSS text already extracted from
a single attribute or ``<style>`` element.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, urlparse

from bs4 import BeautifulSoup

from notionproxy.fetcher import host_matches, is_cdn_url_allowed, is_page_domain
from notionproxy.mime import asset_type_for_path

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from bs4 import Tag

ASSET_PROXY_PATH = "/proxy/asset"
_UPSTREAM_ASSET_PREFIXES = ("/_assets/", "/assets/")

_ANALYTICS_SRC_MARKERS = (
    "googletagmanager.com",
    "google-analytics.com",
    "gtag/js",
    "segment.com",
    "segment.io",
)
_ANALYTICS_INLINE_MARKERS = (
    "gtag(",
    "GoogleAnalyticsObject",
    "googletagmanager",
    "analytics.load(",
    "window.dataLayer",
)

_CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)([^'")]+)\1\s*\)""")

# (tag name, attribute) pairs holding asset references
_ASSET_ATTRIBUTES = (("script", "src"), ("link", "href"), ("img", "src"))


@dataclass(frozen=True)
class RewriteOptions:
    """Everything the rewriter needs to know about the upstream platform."""

    upstream_host: str  # e.g. "www.notion.so"
    page_domains: tuple[str, ...] = ("notion.so", "notion.site")
    cdn_host_suffixes: tuple[str, ...] = ()
    head_snippets: tuple[str, ...] = ()


def strip_link(href: str) -> str:
    """Drop query string and fragment from a link."""
    return href.split("?", 1)[0].split("#", 1)[0]


def rewrite_asset_url(url: str, options: RewriteOptions) -> str | None:
    """Return the same-origin replacement for an asset URL, or None to keep it.

    - asset on the upstream host         → same-origin relative path (query kept)
    - asset on another page-domain host  → ``/proxy/asset?url=<percent-encoded url>``
    - allow-listed CDN asset             → ``/proxy/asset?url=<percent-encoded url>``

    Only the upstream host itself may become a relative path: relative paths
    are fetched back from ``base_url``, so e.g. ``file.notion.so`` images
    must keep their host through the passthrough.
    """
    url = url.strip()
    parsed = urlparse(url)
    if not parsed.netloc or parsed.scheme not in ("http", "https", ""):
        return None

    hostname = (parsed.hostname or "").lower()
    asset_like = (
        parsed.path.startswith(_UPSTREAM_ASSET_PREFIXES)
        or asset_type_for_path(parsed.path) is not None
    )
    if hostname == options.upstream_host.lower() and asset_like:
        # parsed.path is still percent-encoded; keep it that way
        return parsed.path + (f"?{parsed.query}" if parsed.query else "")

    absolute = url if parsed.scheme else f"https:{url}"
    page_domain_asset = asset_like and host_matches(hostname, options.page_domains)
    if page_domain_asset or is_cdn_url_allowed(absolute, options.cdn_host_suffixes):
        return f"{ASSET_PROXY_PATH}?url={quote(absolute, safe='')}"

    return None


def _rewrite_css(css: str, options: RewriteOptions) -> str:
    def _replace(match: re.Match[str]) -> str:
        quote_char, target = match.group(1), match.group(2)
        replacement = rewrite_asset_url(target, options)
        if replacement is None:
            return match.group(0)
        return f"url({quote_char}{replacement}{quote_char})"

    return _CSS_URL_RE.sub(_replace, css)


def _is_analytics_script(tag: Tag) -> bool:
    src = tag.get("src")
    if src:
        return any(marker in src for marker in _ANALYTICS_SRC_MARKERS)
    body = tag.string or ""
    return any(marker in body for marker in _ANALYTICS_INLINE_MARKERS)


def discover_page_links(html: str, page_domains: Iterable[str]) -> list[str]:
    """Collect distinct upstream page links, stripped, in document order."""
    soup = BeautifulSoup(html, "lxml")
    domains = tuple(page_domains)
    seen: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if is_page_domain(href, domains):
            seen.setdefault(strip_link(href), None)
    return list(seen)


def rewrite_html(
    html: str,
    options: RewriteOptions,
    link_targets: Mapping[str, str] | None = None,
) -> str:
    """Rewrite a fetched page so follow-on requests come back through the proxy.

    Steps (order matters):
      1. Drop analytics / gtag / segment scripts.
      2. Point asset references at same-origin paths.
      3. Point discovered page links at their mapping paths (``link_targets``
         maps a stripped upstream link to its same-origin path).
      4. Append head snippets.
    """
    soup = BeautifulSoup(html, "lxml")

    # Step 1: analytics
    for script in soup.find_all("script"):
        if _is_analytics_script(script):
            script.decompose()

    # Step 2: asset references
    for tag_name, attr in _ASSET_ATTRIBUTES:
        for tag in soup.find_all(tag_name, attrs={attr: True}):
            replacement = rewrite_asset_url(tag[attr], options)
            if replacement is not None:
                tag[attr] = replacement

    for tag in soup.find_all(style=True):
        tag["style"] = _rewrite_css(tag["style"], options)

    for style in soup.find_all("style"):
        if style.string:
            style.string = _rewrite_css(style.string, options)

    # Step 3: discovered page links
    if link_targets:
        for anchor in soup.find_all("a", href=True):
            target = link_targets.get(strip_link(anchor["href"].strip()))
            if target is not None:
                anchor["href"] = target

    # Step 4: head snippets
    if options.head_snippets:
        _append_head_snippets(soup, options.head_snippets)

    return str(soup)


def insert_head_snippets(html: str, snippets: Iterable[str]) -> str:
    """Append ``snippets`` to the ``<head>`` of an already rewritten page."""
    soup = BeautifulSoup(html, "lxml")
    _append_head_snippets(soup, snippets)
    return str(soup)


def _append_head_snippets(soup: BeautifulSoup, snippets: Iterable[str]) -> None:
    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        (soup.html or soup).insert(0, head)
    for snippet in snippets:
        # html.parser keeps fragments as-is instead of wrapping them in <html><body>
        fragment = BeautifulSoup(snippet, "html.parser")
        for node in list(fragment.contents):
            head.append(node.extract())
