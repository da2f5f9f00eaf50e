"""
Caching module with per-type TTL, stale-while-revalidate and quota recovery.
"""
from .core import (
    CacheEntry,
    CacheStats,
    Classification,
    CorruptEntryError,
    FreshnessDurations,
    FreshnessState,
)
from .ttl_policies import (
    FRESHNESS_POLICY,
    DEFAULT_FRESH_TTL,
    DEFAULT_STALE_TTL,
    build_entry,
    classify,
    durations_for,
)
from .storage import (
    MemoryStorage,
    SqliteStorage,
    StorageBackend,
    StorageError,
    StorageQuotaExceeded,
    StorageUnavailable,
    classify_storage_error,
)
from .store import CacheStore, DEFAULT_NAMESPACE
from .coalescer import RequestCoalescer
from .manager import AppCache, create_cache

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStats",
    "Classification",
    "CorruptEntryError",
    "FreshnessDurations",
    "FreshnessState",
    # Freshness policy
    "FRESHNESS_POLICY",
    "DEFAULT_FRESH_TTL",
    "DEFAULT_STALE_TTL",
    "build_entry",
    "classify",
    "durations_for",
    # Storage
    "MemoryStorage",
    "SqliteStorage",
    "StorageBackend",
    "StorageError",
    "StorageQuotaExceeded",
    "StorageUnavailable",
    "classify_storage_error",
    "CacheStore",
    "DEFAULT_NAMESPACE",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "AppCache",
    "create_cache",
]
