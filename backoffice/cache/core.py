"""
Core cache data structures.
"""
import json
from dataclasses import dataclass, asdict
from typing import Any, Optional
from enum import Enum


class FreshnessState(Enum):
    """Temporal state of a cache entry relative to "now"."""
    MISS = "miss"                           # Nothing usable stored
    FRESH = "fresh"                         # Within fresh TTL, no refresh
    STALE_REVALIDATE = "stale_revalidate"   # Serve, refresh in background
    STALE_EXPIRED = "stale_expired"         # Past stale window, serve best-effort + refresh


class CorruptEntryError(ValueError):
    """Raised when a stored payload cannot be decoded into a CacheEntry."""


@dataclass
class CacheEntry:
    """
    A cached payload with the timestamps that drive its freshness.

    All timestamps are epoch seconds. ``created_at <= fresh_until <= stale_until``
    holds for every entry built by the cache store.
    """
    data: Any
    created_at: float
    fresh_until: float
    stale_until: float
    entry_type: Optional[str] = None

    def is_past_stale_window(self, now: float) -> bool:
        """True once the entry is fully expired."""
        return now > self.stale_until

    def to_json(self) -> str:
        """Serialize for the storage collaborator."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        """
        Decode a stored payload.

        Raises:
            CorruptEntryError: If the payload is not a well-formed entry
        """
        try:
            payload = json.loads(raw)
            return cls(
                data=payload["data"],
                created_at=float(payload["created_at"]),
                fresh_until=float(payload["fresh_until"]),
                stale_until=float(payload["stale_until"]),
                entry_type=payload.get("entry_type"),
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise CorruptEntryError(f"Unreadable cache entry: {e}") from e


@dataclass
class Classification:
    """Result of classifying an entry: its state and the data to serve."""
    state: FreshnessState
    data: Any = None

    @property
    def needs_refresh(self) -> bool:
        return self.state in (FreshnessState.STALE_REVALIDATE, FreshnessState.STALE_EXPIRED)


@dataclass
class FreshnessDurations:
    """Fresh TTL and stale window (both measured from creation), in seconds."""
    fresh_ttl: float
    stale_ttl: float


@dataclass
class CacheStats:
    """
    Diagnostic snapshot of the namespaced entries.

    ``stale_count`` includes expired entries; corrupt entries count as expired.
    """
    entries: int = 0
    approx_size_bytes: int = 0
    stale_count: int = 0
    expired_count: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return asdict(self)
