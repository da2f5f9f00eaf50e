"""
Namespaced cache store over a key-value storage collaborator.

Every storage failure is recovered here: reads degrade to misses and writes
report False. Nothing in this module raises a StorageError to its callers.
"""
import re
import time
import logging
from typing import Any, Callable, Iterator, Mapping, Optional, Tuple

from .core import CacheEntry, CacheStats, CorruptEntryError
from .storage import StorageBackend, StorageError, StorageQuotaExceeded
from .ttl_policies import build_entry

logger = logging.getLogger("cache.store")

DEFAULT_NAMESPACE = "bpf_cache_"
PROBE_KEY = "__storage_test__"


class CacheStore:
    """
    Persistent, namespaced cache entries with quota recovery and invalidation.

    Only keys starting with ``namespace`` are ever read, written or removed,
    so unrelated data in the same storage is left alone.
    """

    def __init__(
        self,
        storage: StorageBackend,
        namespace: str = DEFAULT_NAMESPACE,
        policy: Optional[Mapping[str, Mapping[str, float]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            storage: Key-value storage collaborator
            namespace: Prefix for every key this store owns
            policy: Entry-type TTL table (defaults to FRESHNESS_POLICY)
            clock: Returns the current time in epoch seconds
        """
        self._storage = storage
        self.namespace = namespace
        self._policy = policy
        self._clock = clock

    def _full_key(self, key: str) -> str:
        return self.namespace + key

    def _probe(self) -> Optional[StorageError]:
        probe_key = self._full_key(PROBE_KEY)
        try:
            self._storage.set(probe_key, PROBE_KEY)
            self._storage.remove(probe_key)
            return None
        except StorageError as e:
            return e

    def is_available(self) -> bool:
        """Probe the storage with a throwaway write and delete."""
        return self._probe() is None

    def _usable(self) -> bool:
        # A full store can still be read from and evicted
        error = self._probe()
        return error is None or isinstance(error, StorageQuotaExceeded)

    # =========================================================================
    # Entry operations
    # =========================================================================

    def write(self, key: str, data: Any, entry_type: Optional[str] = None) -> bool:
        """
        Store ``data`` under ``key`` with timestamps from the entry type's policy.

        On a full store, expired entries are evicted and the write is retried
        once.

        Returns:
            True if the entry was persisted
        """
        if not self._usable():
            return False

        entry = build_entry(data, self._clock(), entry_type, self._policy)
        try:
            raw = entry.to_json()
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache entry not serializable: {key} - {e}")
            return False

        full_key = self._full_key(key)
        try:
            self._storage.set(full_key, raw)
            return True
        except StorageQuotaExceeded:
            evicted = self.evict_stale()
            logger.info(f"Storage full writing {key}, evicted {evicted} stale entries")
            try:
                self._storage.set(full_key, raw)
                return True
            except StorageError as e:
                logger.warning(f"Cache storage failed after cleanup: {key} - {e}")
                return False
        except StorageError as e:
            logger.warning(f"Cache storage failed: {key} - {e}")
            return False

    def read(self, key: str) -> Optional[CacheEntry]:
        """
        Load the entry for ``key``.

        Returns:
            The entry, or None when missing, unreadable or storage is unavailable
        """
        if not self._usable():
            return None

        full_key = self._full_key(key)
        try:
            raw = self._storage.get(full_key)
        except StorageError as e:
            logger.warning(f"Cache read failed: {key} - {e}")
            return None
        if raw is None:
            return None

        try:
            return CacheEntry.from_json(raw)
        except CorruptEntryError as e:
            logger.warning(f"Discarding corrupt cache entry: {key} - {e}")
            self._discard(full_key)
            return None

    def remove(self, key: str) -> None:
        """Best-effort delete of a single entry."""
        if not self._usable():
            return
        self._discard(self._full_key(key))

    def clear_all(self) -> int:
        """
        Remove every entry in the namespace.

        Returns:
            Number of entries removed
        """
        if not self._usable():
            return 0
        count = 0
        for full_key in self._namespaced_keys():
            if self._discard(full_key):
                count += 1
        logger.info(f"Cleared {count} cache entries")
        return count

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_by_type(self, entry_type: str) -> int:
        """
        Remove all entries written with ``entry_type``.

        Returns:
            Number of entries removed
        """
        if not self._usable():
            return 0
        count = 0
        for full_key, entry in self._scan():
            if entry is not None and entry.entry_type == entry_type:
                if self._discard(full_key):
                    count += 1
        if count:
            logger.info(f"Invalidated {count} entries of type '{entry_type}'")
        return count

    def invalidate_by_pattern(self, pattern: str) -> int:
        """
        Remove all entries whose key (without namespace) matches a regex.

        Args:
            pattern: Regular expression, matched with ``re.search``

        Returns:
            Number of entries removed

        Raises:
            re.error: If the pattern does not compile
        """
        regex = re.compile(pattern)
        if not self._usable():
            return 0
        count = 0
        for full_key in self._namespaced_keys():
            if regex.search(full_key[len(self.namespace):]):
                if self._discard(full_key):
                    count += 1
        if count:
            logger.info(f"Invalidated {count} entries matching '{pattern}'")
        return count

    def evict_stale(self, now: Optional[float] = None) -> int:
        """
        Remove entries past their stale window, plus corrupt entries.

        Returns:
            Number of entries removed
        """
        if not self._usable():
            return 0
        now = self._clock() if now is None else now
        count = 0
        for full_key, entry in self._scan():
            if entry is None or entry.is_past_stale_window(now):
                if self._discard(full_key):
                    count += 1
        if count:
            logger.info(f"Evicted {count} expired cache entries")
        return count

    def stats(self, now: Optional[float] = None) -> CacheStats:
        """Read-only snapshot of the namespace."""
        result = CacheStats()
        if not self._usable():
            return result
        now = self._clock() if now is None else now
        for full_key in self._namespaced_keys():
            try:
                raw = self._storage.get(full_key)
            except StorageError:
                continue
            if raw is None:
                continue
            result.entries += 1
            result.approx_size_bytes += len(full_key.encode("utf-8")) + len(raw.encode("utf-8"))
            try:
                entry = CacheEntry.from_json(raw)
            except CorruptEntryError:
                result.expired_count += 1
                continue
            if entry.is_past_stale_window(now):
                result.expired_count += 1
                result.stale_count += 1
            elif now > entry.fresh_until:
                result.stale_count += 1
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    def _namespaced_keys(self) -> list:
        try:
            return [k for k in self._storage.keys() if k.startswith(self.namespace)]
        except StorageError as e:
            logger.warning(f"Cache key enumeration failed: {e}")
            return []

    def _scan(self) -> Iterator[Tuple[str, Optional[CacheEntry]]]:
        """Yield (full_key, entry) pairs; entry is None when corrupt."""
        for full_key in self._namespaced_keys():
            try:
                raw = self._storage.get(full_key)
            except StorageError:
                continue
            if raw is None:
                continue
            try:
                yield full_key, CacheEntry.from_json(raw)
            except CorruptEntryError:
                yield full_key, None

    def _discard(self, full_key: str) -> bool:
        try:
            self._storage.remove(full_key)
            return True
        except StorageError as e:
            logger.debug(f"Cache remove failed: {full_key} - {e}")
            return False
