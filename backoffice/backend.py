"""
Supabase REST client for tables, RPCs and edge functions.

Calls are synchronous (requests); the ``*_async`` variants run them in a worker
thread so they can be used as cache fetch functions.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger("backoffice.backend")


class BackendError(Exception):
    """A failed backend call, with the HTTP status and PostgREST code if known."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class SupabaseClient:
    """
    Thin client over the Supabase REST endpoints.

    Usage:
        client = SupabaseClient(settings.supabase_url, settings.supabase_anon_key)
        rows = client.rpc("get_outstanding_credit_list_as_of", {"p_date": "2025-02-14"})
    """

    def __init__(
        self,
        base_url: str,
        anon_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.access_token = access_token
        self.timeout = timeout
        self._session = session or requests.Session()

    def _get_headers(self) -> Dict[str, str]:
        """Get API authentication headers."""
        headers = {"Content-Type": "application/json"}
        if self.anon_key:
            headers["apikey"] = self.anon_key
        token = self.access_token or self.anon_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._get_headers(),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise BackendError(f"Request timeout: {path}") from e
        except requests.RequestException as e:
            raise BackendError(f"Network error: {e}") from e

        if response.status_code >= 400:
            message, code = _error_details(response)
            logger.warning(f"Backend call failed: {method} {path} [{response.status_code}] {message}")
            raise BackendError(message, status=response.status_code, code=code)

        if not response.content:
            return None
        return response.json()

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a stored procedure."""
        return self._request("POST", f"/rest/v1/rpc/{name}", body=params or {})

    def select(self, table: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Query a table with PostgREST filter parameters."""
        query = {"select": "*"}
        query.update(params or {})
        return self._request("GET", f"/rest/v1/{table}", params=query)

    def insert(self, table: str, rows: Any) -> Any:
        """Insert one row (dict) or several (list of dicts)."""
        return self._request("POST", f"/rest/v1/{table}", body=rows)

    def invoke_function(self, name: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke an edge function."""
        return self._request("POST", f"/functions/v1/{name}", body=body or {})

    async def rpc_async(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self.rpc, name, params)

    async def select_async(self, table: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self.select, table, params)

    async def insert_async(self, table: str, rows: Any) -> Any:
        return await asyncio.to_thread(self.insert, table, rows)

    async def invoke_function_async(self, name: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self.invoke_function, name, body)


def _error_details(response: requests.Response):
    """Pull message and code out of a PostgREST or edge-function error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error") or f"HTTP {response.status_code}"
        code = payload.get("code")
        return str(message), str(code) if code is not None else None
    return f"HTTP {response.status_code}", None
