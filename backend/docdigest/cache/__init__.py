"""
Cache Package

Persisted analysis artifacts and their freshness:
  - DocumentCache   one artifact-kind namespace over the SQLite cache table
  - BoundedLRU      in-memory front for each namespace
  - SourceWatcher   invalidates every namespace when a local source changes
"""

from docdigest.cache.document_cache import DocumentCache, cache_key, is_remote_source, normalize_source_id
from docdigest.cache.lru import BoundedLRU
from docdigest.cache.watcher import SourceWatcher

__all__ = [
    "BoundedLRU",
    "DocumentCache",
    "SourceWatcher",
    "cache_key",
    "is_remote_source",
    "normalize_source_id",
]
