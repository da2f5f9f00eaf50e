"""
Main cache orchestration with per-type TTL and stale-while-revalidate.
"""
import asyncio
import inspect
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Set

from .core import Classification, FreshnessState
from .coalescer import RequestCoalescer
from .storage import MemoryStorage, SqliteStorage, StorageBackend, StorageError
from .store import CacheStore, DEFAULT_NAMESPACE
from .ttl_policies import classify

logger = logging.getLogger("cache.manager")

FetchFn = Callable[[], Awaitable[Any]]
UpdateFn = Callable[[Any], Any]


class Reporter(Protocol):
    def report(self, err: BaseException, context: Dict[str, Any]) -> None:
        ...


class AppCache:
    """
    Application cache with:
    - Per-entry-type TTL and stale window
    - Stale-while-revalidate with background refresh tasks
    - Optional request coalescing (single-flight) per key
    - Invalidation by type or key pattern

    Without single-flight, concurrent stale reads of one key each start a
    refresh and the last one to finish overwrites the entry.
    """

    def __init__(
        self,
        storage: StorageBackend,
        namespace: str = DEFAULT_NAMESPACE,
        policy: Optional[Mapping[str, Mapping[str, float]]] = None,
        clock: Callable[[], float] = time.time,
        reporter: Optional[Reporter] = None,
        single_flight: bool = False,
    ):
        """
        Initialize the cache.

        Args:
            storage: Key-value storage collaborator
            namespace: Prefix for the cache's keys in the storage
            policy: Entry-type TTL table (defaults to FRESHNESS_POLICY)
            clock: Returns the current time in epoch seconds
            reporter: Receives foreground fetch failures
            single_flight: Share one in-flight fetch per key between callers
        """
        self._storage = storage
        self.store = CacheStore(storage, namespace=namespace, policy=policy, clock=clock)
        self._clock = clock
        self._reporter = reporter
        self.single_flight = single_flight
        self._coalescer = RequestCoalescer()

        # Background revalidation; strong references until each task finishes
        self._revalidations: Set[asyncio.Task] = set()
        self._revalidating_keys: Set[str] = set()

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "revalidation_failures": 0,
        }

    async def get(
        self,
        key: str,
        fetch_fn: FetchFn,
        entry_type: Optional[str] = None,
        on_update: Optional[UpdateFn] = None,
    ) -> Any:
        """
        Get data from cache, or fetch it when nothing usable is cached.

        Cached data is returned without waiting on ``fetch_fn``, even when it
        is expired. A stale or expired hit also starts a background refresh
        whose result is written back and passed to ``on_update``.

        Args:
            key: Cache key (without namespace)
            fetch_fn: Zero-argument callable returning an awaitable of the fresh value
            entry_type: Selects the TTL policy
            on_update: Called with the refreshed value after a background refresh

        Returns:
            Cached or freshly fetched data

        Raises:
            Exception: Whatever fetch_fn raises on a cache miss
        """
        if not isinstance(key, str) or not key:
            raise ValueError("cache key must be a non-empty string")

        cached = classify(self.store.read(key), self._clock())

        if cached.state is not FreshnessState.MISS and cached.data is not None:
            if cached.state is FreshnessState.FRESH:
                logger.debug(f"CACHE HIT (fresh): {key}")
                self._stats["hits_fresh"] += 1
            else:
                logger.info(f"CACHE HIT ({cached.state.value}, revalidating): {key}")
                self._stats["hits_stale"] += 1
                self._trigger_background_revalidate(key, fetch_fn, entry_type, on_update)
            return cached.data

        logger.info(f"CACHE MISS: {key}")
        self._stats["misses"] += 1

        # Reported inside the fetch so coalesced waiters share one report
        async def fetch_and_report() -> Any:
            try:
                return await fetch_fn()
            except Exception as e:
                self._report_failure(e, key)
                raise

        data = await self._fetch(key, fetch_and_report)
        if data is not None:
            self.store.write(key, data, entry_type)
        return data

    async def _fetch(self, key: str, fetch_fn: FetchFn) -> Any:
        if self.single_flight:
            return await self._coalescer.get_or_fetch(key, fetch_fn)
        return await fetch_fn()

    def _report_failure(self, err: Exception, key: str) -> None:
        if self._reporter is None:
            logger.error(f"Fetch failed with no cached fallback: {key} - {err}")
            return
        self._reporter.report(err, {"context": "AppCache.get", "key": key})

    def _trigger_background_revalidate(
        self,
        key: str,
        fetch_fn: FetchFn,
        entry_type: Optional[str],
        on_update: Optional[UpdateFn],
    ) -> None:
        """Start a refresh task without awaiting it."""
        if self.single_flight:
            if key in self._revalidating_keys:
                logger.debug(f"Already revalidating: {key}")
                return
            self._revalidating_keys.add(key)

        task = asyncio.create_task(
            self._revalidate(key, fetch_fn, entry_type, on_update)
        )
        self._revalidations.add(task)
        task.add_done_callback(lambda t: self._on_revalidation_done(t, key))

    async def _revalidate(
        self,
        key: str,
        fetch_fn: FetchFn,
        entry_type: Optional[str],
        on_update: Optional[UpdateFn],
    ) -> None:
        logger.debug(f"Background revalidation started: {key}")
        try:
            data = await self._fetch(key, fetch_fn)
        except Exception as e:
            self._stats["revalidation_failures"] += 1
            logger.warning(f"Background revalidation failed: {key} - {e}")
            return

        if data is not None:
            self.store.write(key, data, entry_type)
        self._stats["revalidations"] += 1
        logger.debug(f"Background revalidation complete: {key}")

        if on_update is None:
            return
        try:
            result = on_update(data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Cache update callback failed: {key} - {e}")

    def _on_revalidation_done(self, task: asyncio.Task, key: str) -> None:
        self._revalidations.discard(task)
        self._revalidating_keys.discard(key)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background revalidation crashed: {key} - {error}")

    async def drain(self) -> None:
        """Wait for every in-flight background refresh to finish."""
        while self._revalidations:
            await asyncio.gather(*list(self._revalidations), return_exceptions=True)

    async def close(self) -> None:
        """Finish background work and release the storage."""
        await self.drain()
        try:
            self._storage.close()
        except StorageError as e:
            logger.warning(f"Cache storage close failed: {e}")

    # =========================================================================
    # Direct access
    # =========================================================================

    def set(self, key: str, data: Any, entry_type: Optional[str] = None) -> bool:
        """Write an entry directly, bypassing any fetch."""
        return self.store.write(key, data, entry_type)

    def peek(self, key: str) -> Classification:
        """Classify the stored entry for ``key`` without fetching."""
        return classify(self.store.read(key), self._clock())

    def remove(self, key: str) -> None:
        self.store.remove(key)

    def is_available(self) -> bool:
        return self.store.is_available()

    # =========================================================================
    # Invalidation
    # =========================================================================

    def clear_all(self) -> int:
        return self.store.clear_all()

    def invalidate_by_type(self, entry_type: str) -> int:
        return self.store.invalidate_by_type(entry_type)

    def invalidate_by_pattern(self, pattern: str) -> int:
        return self.store.invalidate_by_pattern(pattern)

    def evict_stale(self, now: Optional[float] = None) -> int:
        return self.store.evict_stale(now)

    def get_stats(self) -> Dict[str, Any]:
        """Get storage and hit/miss statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        stats = self.store.stats().to_dict()
        stats.update(self._stats)
        stats.update({
            "available": self.store.is_available(),
            "hit_rate_percent": round(hit_rate, 1),
            "revalidating_count": len(self._revalidations),
            "single_flight": self.single_flight,
            "coalescer": self._coalescer.get_stats(),
        })
        return stats


def create_cache(settings, reporter: Optional[Reporter] = None) -> AppCache:
    """
    Build an AppCache from application settings.

    Falls back to in-memory storage when the SQLite store cannot be opened.
    """
    storage: StorageBackend
    if settings.cache_backend == "sqlite":
        try:
            storage = SqliteStorage(settings.cache_db_path, quota_bytes=settings.cache_quota_bytes)
        except StorageError as e:
            logger.warning(f"SQLite cache unavailable, using memory storage: {e}")
            storage = MemoryStorage(quota_bytes=settings.cache_quota_bytes)
    else:
        storage = MemoryStorage(quota_bytes=settings.cache_quota_bytes)

    return AppCache(
        storage,
        namespace=settings.cache_namespace,
        reporter=reporter,
        single_flight=settings.cache_single_flight,
    )
