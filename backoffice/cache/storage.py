"""
Key-value storage collaborators for the cache store.

Backends are synchronous string stores. They report failures through the
StorageError hierarchy so the cache can tell a full store from a broken one
without inspecting error messages.
"""
import errno
import logging
import sqlite3
import threading
from pathlib import Path
from contextlib import contextmanager
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger("cache.storage")

DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "cache.db"

# Messages SQLite uses when it runs out of room (SQLITE_FULL)
_SQLITE_FULL_MESSAGES = ("database or disk is full", "database is full")


class StorageError(Exception):
    """Base class for storage collaborator failures."""


class StorageUnavailable(StorageError):
    """The store is disabled or cannot be opened."""


class StorageQuotaExceeded(StorageError):
    """The store has no room left for the write."""


class StorageBackend(Protocol):
    """Interface the cache store requires from its persistent store."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...

    def close(self) -> None:
        ...


def classify_storage_error(exc: BaseException) -> StorageError:
    """
    Translate a native storage failure into the StorageError taxonomy.

    This is the only place where error messages are inspected: SQLite reports
    SQLITE_FULL through OperationalError text.
    """
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, OSError):
        if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            return StorageQuotaExceeded(str(exc))
        return StorageUnavailable(str(exc))
    if isinstance(exc, sqlite3.Error):
        message = str(exc).lower()
        if any(marker in message for marker in _SQLITE_FULL_MESSAGES):
            return StorageQuotaExceeded(str(exc))
        if "unable to open" in message or "readonly" in message:
            return StorageUnavailable(str(exc))
        return StorageError(str(exc))
    return StorageError(str(exc))


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class MemoryStorage:
    """
    In-process string store with an optional byte quota.

    Mirrors the behaviour of a browser's localStorage: writes past the quota
    raise StorageQuotaExceeded, and a disabled store raises StorageUnavailable
    on every call (as private browsing modes do).
    """

    def __init__(self, quota_bytes: Optional[int] = None, enabled: bool = True):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.quota_bytes = quota_bytes
        self.enabled = enabled

    def _check_enabled(self) -> None:
        if not self.enabled:
            raise StorageUnavailable("storage is disabled")

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return sum(_entry_size(k, v) for k, v in self._data.items())

    def get(self, key: str) -> Optional[str]:
        self._check_enabled()
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._check_enabled()
        with self._lock:
            if self.quota_bytes is not None:
                used = sum(
                    _entry_size(k, v) for k, v in self._data.items() if k != key
                )
                if used + _entry_size(key, value) > self.quota_bytes:
                    raise StorageQuotaExceeded(
                        f"quota of {self.quota_bytes} bytes exceeded writing {key}"
                    )
            self._data[key] = value

    def remove(self, key: str) -> None:
        self._check_enabled()
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        self._check_enabled()
        with self._lock:
            return list(self._data.keys())

    def close(self) -> None:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SqliteStorage:
    """
    SQLite-backed persistent string store.

    A connection is opened per call. When ``quota_bytes`` is set, the database
    is capped with ``PRAGMA max_page_count`` so that writes past the cap fail
    with SQLITE_FULL, which surfaces as StorageQuotaExceeded.
    """

    def __init__(self, db_path: Optional[Path] = None, quota_bytes: Optional[int] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.quota_bytes = quota_bytes
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise classify_storage_error(e) from e

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            if self.quota_bytes is not None:
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
                max_pages = max(1, self.quota_bytes // page_size)
                conn.execute(f"PRAGMA max_page_count = {int(max_pages)}")
            yield conn
        finally:
            conn.close()

    def _run(self, sql: str, params: tuple = ()) -> list:
        try:
            with self._get_connection() as conn:
                with conn:
                    return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise classify_storage_error(e) from e

    def get(self, key: str) -> Optional[str]:
        rows = self._run("SELECT value FROM kv_store WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set(self, key: str, value: str) -> None:
        self._run(
            "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
            (key, value),
        )

    def remove(self, key: str) -> None:
        self._run("DELETE FROM kv_store WHERE key = ?", (key,))

    def keys(self) -> List[str]:
        return [row[0] for row in self._run("SELECT key FROM kv_store")]

    def close(self) -> None:
        pass
