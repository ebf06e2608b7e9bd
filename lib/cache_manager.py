"""Centralized cache utilities (TTLCache settings & key builders)."""
from __future__ import annotations

import os
from cachetools import TTLCache

# Short-link resolution cache settings
SHORT_LINK_CACHE_VERSION = int(os.getenv("SHORT_LINK_CACHE_VERSION", "1"))
SHORT_LINK_CACHE_MAXSIZE = int(os.getenv("SHORT_LINK_CACHE_MAXSIZE", "512"))
SHORT_LINK_CACHE_TTL_S = int(os.getenv("SHORT_LINK_CACHE_TTL_S", "600"))

# Lazy-initialized caches
_short_link_cache: TTLCache | None = None


def get_short_link_cache() -> TTLCache:
    global _short_link_cache
    if _short_link_cache is None:
        _short_link_cache = TTLCache(maxsize=SHORT_LINK_CACHE_MAXSIZE, ttl=SHORT_LINK_CACHE_TTL_S)
    return _short_link_cache


def clear_short_link_cache() -> None:
    if _short_link_cache is not None:
        _short_link_cache.clear()


def build_short_link_cache_key(url: str) -> str:
    return f"sl:{SHORT_LINK_CACHE_VERSION}:{url}"
