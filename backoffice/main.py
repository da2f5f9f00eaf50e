"""
Back-office API: cached dashboard reads and cache maintenance endpoints.
"""
import re
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request

from backoffice.backend import SupabaseClient
from backoffice.cache import AppCache, create_cache
from backoffice.errors import ErrorReporter
from backoffice.services import DashboardService
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("backoffice.main")

APP_VERSION = "v0.3.0"
APP_NAME = "Pump Back Office"


def create_app(
    cache: Optional[AppCache] = None,
    backend: Optional[SupabaseClient] = None,
    reporter: Optional[ErrorReporter] = None,
) -> FastAPI:
    """
    Build the API with explicit collaborators.

    Anything not supplied is built from settings.
    """
    reporter = reporter or ErrorReporter(settings.error_report_url, settings.app_env)
    cache = cache or create_cache(settings, reporter=reporter)
    backend = backend or SupabaseClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        access_token=settings.supabase_access_token,
        timeout=settings.request_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await cache.close()

    app = FastAPI(
        title=APP_NAME,
        description="Fuel station back-office data with stale-while-revalidate caching",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.cache = cache
    app.state.reporter = reporter
    app.state.service = DashboardService(
        cache,
        backend,
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_seconds,
        max_delay=settings.retry_max_seconds,
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "cache_available": cache.is_available()}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {"name": APP_NAME, "version": APP_VERSION}

    @app.get("/cache/stats")
    def cache_stats():
        """Get cache statistics."""
        return cache.get_stats()

    @app.post("/cache/clear")
    def cache_clear():
        """Remove every cache entry."""
        return {"cleared": cache.clear_all()}

    @app.post("/cache/invalidate")
    def cache_invalidate(
        entry_type: Optional[str] = Query(default=None, description="Entry type to drop"),
        pattern: Optional[str] = Query(default=None, description="Regex matched against cache keys"),
    ):
        """Invalidate entries by type and/or key pattern."""
        if not entry_type and not pattern:
            raise HTTPException(status_code=400, detail="Provide entry_type or pattern")
        removed = 0
        if entry_type:
            removed += cache.invalidate_by_type(entry_type)
        if pattern:
            try:
                removed += cache.invalidate_by_pattern(pattern)
            except re.error as e:
                raise HTTPException(status_code=400, detail=f"Invalid pattern: {e}")
        return {"removed": removed}

    @app.post("/cache/evict")
    def cache_evict():
        """Drop entries past their stale window."""
        return {"evicted": cache.evict_stale()}

    @app.get("/api/dashboard")
    async def api_dashboard(
        request: Request,
        start: str = Query(..., description="Start date (YYYY-MM-DD)"),
        end: str = Query(..., description="End date (YYYY-MM-DD)"),
    ):
        """Dashboard aggregates for a date range, served from cache when possible."""
        service: DashboardService = request.app.state.service
        try:
            data = await service.get_dashboard_data(start, end)
        except Exception as e:
            message = reporter.handle(e, {"context": "api_dashboard"}, report=False)
            raise HTTPException(status_code=502, detail=message)
        return {"start": start, "end": end, "data": data}

    return app


app = create_app()
