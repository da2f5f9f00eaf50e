"""
Freshness policy: per-entry-type TTL table and entry classification.
"""
from typing import Dict, Mapping, Optional

from .core import CacheEntry, Classification, FreshnessDurations, FreshnessState


MINUTE = 60
HOUR = 60 * MINUTE

# Fallback for unknown or missing entry types
DEFAULT_FRESH_TTL = 5 * MINUTE
DEFAULT_STALE_TTL = 30 * MINUTE

# TTL configuration by entry type (in seconds).
# The stale window is measured from creation, not added after the fresh TTL.
FRESHNESS_POLICY: Dict[str, Dict[str, float]] = {
    # Static reference data - long TTL
    "staff_role": {
        "fresh_ttl": 1 * HOUR,
        "stale_ttl": 24 * HOUR,
    },
    "staff_list": {
        "fresh_ttl": 10 * MINUTE,
        "stale_ttl": 1 * HOUR,
    },
    # Frequently accessed data - short TTL with stale-while-revalidate
    "dashboard_data": {
        "fresh_ttl": 2 * MINUTE,
        "stale_ttl": 10 * MINUTE,
    },
    "credit_summary": {
        "fresh_ttl": 2 * MINUTE,
        "stale_ttl": 10 * MINUTE,
    },
    "today_sales": {
        "fresh_ttl": 1 * MINUTE,
        "stale_ttl": 5 * MINUTE,
    },
    "recent_activity": {
        "fresh_ttl": 1 * MINUTE,
        "stale_ttl": 5 * MINUTE,
    },
    # DSR summary data - moderate TTL
    "dsr_summary": {
        "fresh_ttl": 3 * MINUTE,
        "stale_ttl": 15 * MINUTE,
    },
    "profit_loss": {
        "fresh_ttl": 3 * MINUTE,
        "stale_ttl": 15 * MINUTE,
    },
}


def durations_for(
    entry_type: Optional[str],
    policy: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> FreshnessDurations:
    """
    Get the TTL pair for an entry type.

    Args:
        entry_type: Entry type token, or None
        policy: Alternative policy table (defaults to FRESHNESS_POLICY)

    Returns:
        FreshnessDurations, falling back to 5 min fresh / 30 min stale
    """
    table = FRESHNESS_POLICY if policy is None else policy
    config = table.get(entry_type) if entry_type is not None else None
    if config is None:
        return FreshnessDurations(DEFAULT_FRESH_TTL, DEFAULT_STALE_TTL)
    return FreshnessDurations(config["fresh_ttl"], config["stale_ttl"])


def build_entry(
    data,
    now: float,
    entry_type: Optional[str] = None,
    policy: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> CacheEntry:
    """Create an entry whose timestamps are derived from the policy."""
    durations = durations_for(entry_type, policy)
    fresh_until = now + max(0, durations.fresh_ttl)
    # A misconfigured row must not break created_at <= fresh_until <= stale_until
    stale_until = max(fresh_until, now + durations.stale_ttl)
    return CacheEntry(
        data=data,
        created_at=now,
        fresh_until=fresh_until,
        stale_until=stale_until,
        entry_type=entry_type,
    )


def classify(entry: Optional[CacheEntry], now: float) -> Classification:
    """
    Classify an entry relative to ``now``.

    Pure function: never mutates the entry.
    """
    if entry is None:
        return Classification(FreshnessState.MISS)
    if now <= entry.fresh_until:
        return Classification(FreshnessState.FRESH, entry.data)
    if now <= entry.stale_until:
        return Classification(FreshnessState.STALE_REVALIDATE, entry.data)
    return Classification(FreshnessState.STALE_EXPIRED, entry.data)
