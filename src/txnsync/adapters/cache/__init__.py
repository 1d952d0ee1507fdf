"""Local cache adapters."""

from txnsync.adapters.cache.cache_store import (
    CacheEntry,
    CacheStore,
    CachedAccounts,
    stable_key,
)
from txnsync.adapters.cache.kv_store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)
from txnsync.adapters.cache.writer import BackgroundWriter

__all__ = [
    "BackgroundWriter",
    "CacheEntry",
    "CacheStore",
    "CachedAccounts",
    "FileKeyValueStore",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "stable_key",
]
