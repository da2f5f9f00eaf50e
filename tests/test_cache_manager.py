"""
Tests for the stale-while-revalidate read path and request coalescing.
"""
import asyncio

import pytest

from backoffice.cache import (
    AppCache,
    FreshnessState,
    MemoryStorage,
    RequestCoalescer,
    create_cache,
)
from config.settings import Settings


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingFetch:
    """Async fetch function that records calls and returns queued values."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingReporter:
    def __init__(self):
        self.reports = []

    def report(self, err, context):
        self.reports.append((err, context))


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def cache(clock, reporter):
    return AppCache(MemoryStorage(), clock=clock, reporter=reporter)


# =============================================================================
# Miss Path
# =============================================================================

class TestMissPath:

    @pytest.mark.asyncio
    async def test_miss_awaits_fetch_and_stores(self, cache):
        fetch = CountingFetch({"total": 42})
        assert await cache.get("dash", fetch, "dashboard_data") == {"total": 42}
        assert fetch.calls == 1
        assert cache.peek("dash").state is FreshnessState.FRESH

    @pytest.mark.asyncio
    async def test_miss_failure_reports_and_raises(self, cache, reporter):
        error = RuntimeError("Failed to fetch")
        with pytest.raises(RuntimeError):
            await cache.get("dash", CountingFetch(error), "dashboard_data")

        assert cache.peek("dash").state is FreshnessState.MISS
        assert reporter.reports == [(error, {"context": "AppCache.get", "key": "dash"})]

    @pytest.mark.asyncio
    async def test_none_result_returned_but_not_cached(self, cache):
        fetch = CountingFetch(None)
        assert await cache.get("role", fetch, "staff_role") is None
        assert cache.peek("role").state is FreshnessState.MISS

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.get("", CountingFetch(1))

    @pytest.mark.asyncio
    async def test_disabled_storage_still_serves_fetch(self, clock):
        storage = MemoryStorage(enabled=False)
        cache = AppCache(storage, clock=clock)
        fetch = CountingFetch([1, 2, 3])

        assert await cache.get("k", fetch) == [1, 2, 3]
        assert await cache.get("k", fetch) == [1, 2, 3]
        # Nothing could be cached, so every read fetches
        assert fetch.calls == 2
        assert cache.is_available() is False


# =============================================================================
# Fresh and Stale Paths
# =============================================================================

class TestStaleWhileRevalidate:

    @pytest.mark.asyncio
    async def test_today_sales_scenario(self, cache, clock):
        """Fresh at 30s, stale-revalidate at 120s for a 60s/300s policy."""
        cache.set("sales", {"litres": 100}, "today_sales")

        clock.advance(30)
        fetch = CountingFetch({"litres": 150})
        assert await cache.get("sales", fetch, "today_sales") == {"litres": 100}
        await cache.drain()
        assert fetch.calls == 0

        clock.advance(90)
        assert cache.peek("sales").state is FreshnessState.STALE_REVALIDATE
        updates = []
        assert await cache.get("sales", fetch, "today_sales", updates.append) == {"litres": 100}
        await cache.drain()

        assert fetch.calls == 1
        assert updates == [{"litres": 150}]
        refreshed = cache.peek("sales")
        assert refreshed.state is FreshnessState.FRESH
        assert refreshed.data == {"litres": 150}

    @pytest.mark.asyncio
    async def test_stale_get_does_not_wait_for_fetch(self, cache, clock):
        cache.set("dash", "cached", "dashboard_data")
        clock.advance(200)
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return "fresh"

        result = await asyncio.wait_for(cache.get("dash", slow_fetch, "dashboard_data"), timeout=1)
        assert result == "cached"

        release.set()
        await cache.drain()
        assert cache.peek("dash").data == "fresh"

    @pytest.mark.asyncio
    async def test_expired_entry_still_served(self, cache, clock):
        cache.set("sales", "old", "today_sales")
        clock.advance(1000)
        assert cache.peek("sales").state is FreshnessState.STALE_EXPIRED

        fetch = CountingFetch("new")
        assert await cache.get("sales", fetch, "today_sales") == "old"
        await cache.drain()
        assert fetch.calls == 1
        assert cache.peek("sales").data == "new"

    @pytest.mark.asyncio
    async def test_background_failure_is_swallowed(self, cache, clock, reporter):
        cache.set("credit", "stale-data", "credit_summary")
        clock.advance(150)

        fetch = CountingFetch(ConnectionError("network error"))
        updates = []
        assert await cache.get("credit", fetch, "credit_summary", updates.append) == "stale-data"
        await cache.drain()

        assert fetch.calls == 1
        assert updates == []
        assert cache.peek("credit").data == "stale-data"
        assert reporter.reports == []
        assert cache.get_stats()["revalidation_failures"] == 1

    @pytest.mark.asyncio
    async def test_background_none_result_not_written(self, cache, clock):
        cache.set("dash", "kept", "dashboard_data")
        clock.advance(150)
        updates = []
        await cache.get("dash", CountingFetch(None), "dashboard_data", updates.append)
        await cache.drain()

        assert updates == [None]
        assert cache.peek("dash").data == "kept"

    @pytest.mark.asyncio
    async def test_async_update_callback(self, cache, clock):
        cache.set("dash", 1, "dashboard_data")
        clock.advance(150)
        seen = []

        async def on_update(value):
            seen.append(value)

        await cache.get("dash", CountingFetch(2), "dashboard_data", on_update)
        await cache.drain()
        assert seen == [2]

    @pytest.mark.asyncio
    async def test_failing_update_callback_is_contained(self, cache, clock):
        cache.set("dash", 1, "dashboard_data")
        clock.advance(150)

        def on_update(value):
            raise ValueError("render failed")

        await cache.get("dash", CountingFetch(2), "dashboard_data", on_update)
        await cache.drain()
        assert cache.peek("dash").data == 2

    @pytest.mark.asyncio
    async def test_concurrent_stale_reads_each_refresh(self, cache, clock):
        cache.set("dash", 0, "dashboard_data")
        clock.advance(150)
        fetch = CountingFetch(1, 2)
        updates = []

        await asyncio.gather(
            cache.get("dash", fetch, "dashboard_data", updates.append),
            cache.get("dash", fetch, "dashboard_data", updates.append),
        )
        await cache.drain()

        assert fetch.calls == 2
        assert sorted(updates) == [1, 2]


# =============================================================================
# Single-Flight
# =============================================================================

class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, clock):
        cache = AppCache(MemoryStorage(), clock=clock, single_flight=True)
        release = asyncio.Event()
        calls = []

        async def fetch():
            calls.append(1)
            await release.wait()
            return "value"

        first = asyncio.ensure_future(cache.get("k", fetch))
        second = asyncio.ensure_future(cache.get("k", fetch))
        await asyncio.sleep(0)
        release.set()

        assert await first == "value"
        assert await second == "value"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_shared_failing_miss_reported_once(self, clock, reporter):
        cache = AppCache(MemoryStorage(), clock=clock, reporter=reporter, single_flight=True)
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            raise ConnectionError("backend down")

        first = asyncio.ensure_future(cache.get("k", fetch))
        second = asyncio.ensure_future(cache.get("k", fetch))
        await asyncio.sleep(0)
        release.set()

        for future in (first, second):
            with pytest.raises(ConnectionError):
                await future
        assert len(reporter.reports) == 1
        assert reporter.reports[0][1] == {"context": "AppCache.get", "key": "k"}

    @pytest.mark.asyncio
    async def test_one_background_refresh_per_key(self, clock):
        cache = AppCache(MemoryStorage(), clock=clock, single_flight=True)
        cache.set("dash", 0, "dashboard_data")
        clock.advance(150)
        fetch = CountingFetch(1)
        updates = []

        await cache.get("dash", fetch, "dashboard_data", updates.append)
        await cache.get("dash", fetch, "dashboard_data", updates.append)
        await cache.drain()

        assert fetch.calls == 1
        assert updates == [1]


class TestRequestCoalescer:

    @pytest.mark.asyncio
    async def test_error_shared_with_waiters(self):
        coalescer = RequestCoalescer()
        release = asyncio.Event()

        async def failing():
            await release.wait()
            raise RuntimeError("boom")

        first = asyncio.ensure_future(coalescer.get_or_fetch("k", failing))
        second = asyncio.ensure_future(coalescer.get_or_fetch("k", failing))
        await asyncio.sleep(0)
        assert coalescer.active_requests == 1
        release.set()

        for future in (first, second):
            with pytest.raises(RuntimeError):
                await future
        assert coalescer.active_requests == 0


# =============================================================================
# Stats and Factory
# =============================================================================

class TestCacheStatsAndFactory:

    @pytest.mark.asyncio
    async def test_hit_and_miss_counters(self, cache, clock):
        fetch = CountingFetch("v")
        await cache.get("k", fetch)
        await cache.get("k", fetch)
        stats = cache.get_stats()

        assert stats["misses"] == 1
        assert stats["hits_fresh"] == 1
        assert stats["hit_rate_percent"] == 50.0
        assert stats["entries"] == 1

    def test_create_cache_memory_backend(self):
        settings = Settings(cache_backend="memory", cache_namespace="test_", cache_single_flight=True)
        cache = create_cache(settings)
        assert cache.single_flight is True
        assert cache.store.namespace == "test_"
        assert cache.set("k", 1)

    def test_create_cache_sqlite_backend(self, tmp_path):
        settings = Settings(cache_backend="sqlite", cache_db_path=tmp_path / "cache.db")
        cache = create_cache(settings)
        assert cache.set("k", {"a": 1})
        assert cache.peek("k").data == {"a": 1}
        assert (tmp_path / "cache.db").exists()
