from __future__ import annotations

from notionproxy.models.api import CacheStatsView, MappingView, RegisterInput
from notionproxy.models.cache import CacheEntry, CacheStats
from notionproxy.models.mapping import Mapping
from notionproxy.models.proxy import FetchResult, ProxyResponse, Resolution

__all__ = [
    # mapping
    "Mapping",
    # cache
    "CacheEntry",
    "CacheStats",
    # proxy
    "FetchResult",
    "Resolution",
    "ProxyResponse",
    # api
    "RegisterInput",
    "MappingView",
    "CacheStatsView",
]
