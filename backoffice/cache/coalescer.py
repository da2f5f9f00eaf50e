"""
Request coalescing to prevent duplicate backend calls.

When multiple concurrent coroutines ask for the same data, only one
fetch is made and all requesters share the result.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("cache.coalescer")


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one fetch.

    Pattern:
    - First request for a key starts the fetch as a future
    - Subsequent requests for the same key await that future
    - When the fetch completes, all waiters receive the same result or error

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.get_or_fetch(
            cache_key="dashboard:2025-02-01:2025-02-28",
            fetch_fn=lambda: backend.invoke_function_async("get-dashboard-data", body),
        )
    """

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._waiters: Dict[str, int] = {}

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Raises:
            Exception: Any error from fetch_fn is propagated to every waiter
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is not None:
            self._waiters[cache_key] = self._waiters.get(cache_key, 0) + 1
            logger.debug(
                f"Coalescing request for {cache_key} "
                f"(waiters: {self._waiters[cache_key]})"
            )
            # shield: one waiter being cancelled must not cancel the shared fetch
            return await asyncio.shield(in_flight)

        logger.debug(f"Initiating fetch for {cache_key}")
        in_flight = asyncio.ensure_future(fetch_fn())
        self._in_flight[cache_key] = in_flight
        self._waiters[cache_key] = 0
        in_flight.add_done_callback(lambda _: self._forget(cache_key, in_flight))
        return await asyncio.shield(in_flight)

    def _forget(self, cache_key: str, future: asyncio.Future) -> None:
        if self._in_flight.get(cache_key) is future:
            del self._in_flight[cache_key]
            self._waiters.pop(cache_key, None)
        # Mark the error retrieved so an unawaited failure is not logged as lost
        if not future.cancelled():
            future.exception()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
