"""Tests for freshness classification."""

from hypothesis import given
from hypothesis import strategies as st

from ambient_cache.freshness import Freshness, classify
from ambient_cache.store import CacheEntry


def _entry(created_at: float, max_age_minutes: float = 30.0) -> CacheEntry:
    return CacheEntry(
        key="weather:30.9386,-88.6358",
        value={"temp": 71},
        created_at=created_at,
        expires_at=created_at + max_age_minutes * 60,
    )


def test_missing_entry_is_absent():
    assert classify(None, 30, now=1000.0) is Freshness.ABSENT


def test_entry_within_max_age_is_fresh():
    assert classify(_entry(1000.0), 30, now=1000.0 + 29 * 60) is Freshness.FRESH


def test_entry_exactly_at_max_age_is_fresh():
    assert classify(_entry(1000.0), 30, now=1000.0 + 30 * 60) is Freshness.FRESH


def test_entry_past_max_age_is_stale():
    assert classify(_entry(1000.0), 30, now=1000.0 + 30 * 60 + 1) is Freshness.STALE


def test_weather_entry_created_45_minutes_ago_is_stale():
    """A 30 minute weather entry written 45 minutes ago is stale, not absent."""
    now = 1_700_000_000.0
    entry = _entry(now - 45 * 60)
    assert classify(entry, 30, now=now) is Freshness.STALE


def test_classification_uses_policy_not_stored_expiry():
    """A longer configured max age keeps an entry fresh past its stored expiry."""
    entry = _entry(1000.0, max_age_minutes=15)
    assert classify(entry, 60, now=1000.0 + 45 * 60) is Freshness.FRESH


@given(
    created_at=st.floats(min_value=0, max_value=2e9, allow_nan=False),
    max_age_minutes=st.floats(min_value=0, max_value=1e5, allow_nan=False),
    elapsed=st.floats(min_value=-1e6, max_value=1e9, allow_nan=False),
)
def test_classify_matches_entry_age(created_at, max_age_minutes, elapsed):
    """FRESH iff age <= max age, STALE otherwise, for any present entry."""
    now = created_at + elapsed
    actual = classify(_entry(created_at), max_age_minutes, now)
    if now - created_at <= max_age_minutes * 60:
        assert actual is Freshness.FRESH
    else:
        assert actual is Freshness.STALE


@given(
    max_age_minutes=st.floats(min_value=0, max_value=1e5, allow_nan=False),
    now=st.floats(min_value=0, max_value=2e9, allow_nan=False),
)
def test_classify_absent_only_without_entry(max_age_minutes, now):
    assert classify(None, max_age_minutes, now) is Freshness.ABSENT
