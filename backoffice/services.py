"""
Cached reads and cache-invalidating writes against the Supabase backend.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from backoffice.backend import SupabaseClient
from backoffice.cache import AppCache
from backoffice.errors import with_retry

logger = logging.getLogger("backoffice.services")

DASHBOARD_FUNCTION = "get-dashboard-data"
CREDIT_LIST_RPC = "get_outstanding_credit_list_as_of"

# Entry types each write makes out of date
MUTATION_INVALIDATIONS: Dict[str, Tuple[str, ...]] = {
    "add_credit_entry": ("credit_summary", "recent_activity"),
    "record_credit_payment": ("credit_summary", "recent_activity"),
    "save_day_closing": ("dashboard_data", "recent_activity"),
}

TABLE_INVALIDATIONS: Dict[str, Tuple[str, ...]] = {
    "expenses": ("dashboard_data", "recent_activity"),
    "staff_attendance": ("recent_activity",),
}


class DashboardService:
    """
    Page-level data access: reads go through the cache with stale-while-revalidate,
    writes invalidate the entry types they affect.
    """

    def __init__(
        self,
        cache: AppCache,
        backend: SupabaseClient,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
    ):
        self.cache = cache
        self.backend = backend
        self._retry = {"max_attempts": max_attempts, "base_delay": base_delay, "max_delay": max_delay}

    async def get_dashboard_data(
        self,
        start_date: str,
        end_date: str,
        on_update: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Aggregated DSR, stock and expense rows for a date range."""
        body = {"startDate": start_date, "endDate": end_date}

        async def fetch():
            return await with_retry(
                lambda: self.backend.invoke_function_async(DASHBOARD_FUNCTION, body),
                **self._retry,
            )

        return await self.cache.get(
            f"dashboard:{start_date}:{end_date}", fetch, "dashboard_data", on_update
        )

    async def get_credit_summary(
        self,
        as_of: str,
        on_update: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Outstanding credit per customer as of a date."""
        async def fetch():
            return await with_retry(
                lambda: self.backend.rpc_async(CREDIT_LIST_RPC, {"p_date": as_of}),
                **self._retry,
            )

        return await self.cache.get(f"credit_summary:{as_of}", fetch, "credit_summary", on_update)

    async def get_staff_role(self, email: str) -> Optional[str]:
        """Role of a staff member, or None when unknown."""
        async def fetch():
            rows = await with_retry(
                lambda: self.backend.select_async(
                    "staff", {"select": "role", "email": f"eq.{email}", "limit": 1}
                ),
                **self._retry,
            )
            if not rows:
                return None
            return rows[0].get("role")

        return await self.cache.get(f"staff_role:{email}", fetch, "staff_role")

    async def run_mutation(self, rpc_name: str, params: Dict[str, Any]) -> Any:
        """
        Call a data-changing RPC, then drop the cached data it affects.

        Mutations are never retried; a failed write leaves the cache untouched.
        """
        result = await self.backend.rpc_async(rpc_name, params)
        self._invalidate(MUTATION_INVALIDATIONS.get(rpc_name, ()))
        return result

    async def insert_record(self, table: str, payload: Any) -> Any:
        """Insert rows into a table, then drop the cached data it affects."""
        result = await self.backend.insert_async(table, payload)
        self._invalidate(TABLE_INVALIDATIONS.get(table, ()))
        return result

    def _invalidate(self, entry_types: Tuple[str, ...]) -> None:
        for entry_type in entry_types:
            self.cache.invalidate_by_type(entry_type)
        if entry_types:
            logger.debug(f"Invalidated cache types after write: {', '.join(entry_types)}")
