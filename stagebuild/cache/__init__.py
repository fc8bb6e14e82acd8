"""Cache store module.

This module handles:
- Keyed reader/writer locking of cache directories
- Scoped acquire/release with private working copies
- The cache manifest and LRU eviction
"""

from stagebuild.cache.models import CacheEntry
from stagebuild.cache.store import CacheHandle, CacheStore

__all__ = ["CacheEntry", "CacheHandle", "CacheStore"]
