"""Freshness classification for cache entries."""

import enum

from .store import SECONDS_PER_MINUTE, CacheEntry


class Freshness(enum.Enum):
    """Where a cached entry stands relative to its maximum age."""

    ABSENT = "absent"
    FRESH = "fresh"
    STALE = "stale"


def classify(
    entry: CacheEntry | None,
    max_age_minutes: float,
    now: float,
) -> Freshness:
    """Classify a cache entry against a maximum age.

    Age is measured from ``entry.created_at`` rather than the stored
    ``expires_at``, so a change to the configured max age applies to entries
    written under the old policy too.

    Args:
        entry: Entry returned by the store, or ``None`` on a miss.
        max_age_minutes: Maximum age for the entry's data type.
        now: Current wall-clock time in epoch seconds.

    Returns:
        ``ABSENT`` for a miss, ``FRESH`` while the entry is no older than
        the max age, ``STALE`` afterwards. Stale data is still usable.
    """
    if entry is None:
        return Freshness.ABSENT
    if now - entry.created_at <= max_age_minutes * SECONDS_PER_MINUTE:
        return Freshness.FRESH
    return Freshness.STALE
