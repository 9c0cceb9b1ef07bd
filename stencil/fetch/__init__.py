"""Upstream template fetching for stencil."""

from stencil.fetch.fetcher import ContentFetcher, cache_key
from stencil.fetch.models import CacheEntry, CacheInfo, FetchResult
from stencil.fetch.origins import LATEST, make_resolver

__all__ = [
    "ContentFetcher",
    "FetchResult",
    "CacheEntry",
    "CacheInfo",
    "LATEST",
    "cache_key",
    "make_resolver",
]
