"""Static-asset MIME table and content-type correction.

Upstream serves some assets with a generic ``text/html`` / ``text/plain``
content type. The proxy trusts the file extension for the types below.
"""

from __future__ import annotations

from posixpath import splitext
from urllib.parse import urlparse

STATIC_ASSET_TYPES: dict[str, str] = {
    ".js": "application/javascript",
    ".css": "text/css",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".json": "application/json",
    ".xml": "application/xml",
}

_GENERIC_TYPES = frozenset({"text/html", "text/plain"})


def asset_type_for_path(path: str) -> str | None:
    """Return the MIME type implied by a path's extension, or None."""
    _, ext = splitext(path)
    return STATIC_ASSET_TYPES.get(ext.lower())


def correct_content_type(url: str, declared: str) -> str:
    """Replace a generic declared type with the one the URL's extension implies.

    ``declared`` may carry parameters (``text/plain; charset=utf-8``); only the
    media type is compared. Anything other than text/html or text/plain is kept.
    """
    media_type = declared.split(";", 1)[0].strip().lower()
    if declared and media_type not in _GENERIC_TYPES:
        return declared
    implied = asset_type_for_path(urlparse(url).path)
    if implied is not None:
        return implied
    return declared or "application/octet-stream"


def is_html(content_type: str) -> bool:
    return content_type.split(";", 1)[0].strip().lower() == "text/html"
