"""Tests for the periodic cache sweeper."""

import threading
from unittest.mock import MagicMock

import pytest

from ambient_cache import housekeeping, store
from ambient_cache.errors import StoreError


def test_run_once_removes_entries_past_grace(clock):
    s = store.MemoryCacheStore(clock=clock)
    s.set("old", 1, max_age_minutes=1)
    s.set("recent", 2, max_age_minutes=1)
    clock.advance(30 * 60)
    s.set("new", 3, max_age_minutes=1)
    sweeper = housekeeping.PeriodicSweeper(s, grace_seconds=10 * 60)

    assert sweeper.run_once() == 2
    assert s.get("new") is not None


def test_run_once_passes_grace_to_store():
    mock_store = MagicMock()
    mock_store.sweep.return_value = 0
    sweeper = housekeeping.PeriodicSweeper(mock_store, grace_seconds=86400)

    sweeper.run_once()

    mock_store.sweep.assert_called_once_with(grace_seconds=86400)


def test_run_once_swallows_store_failures():
    """A failing sweep is logged and reported as nothing removed."""
    mock_store = MagicMock()
    mock_store.sweep.side_effect = StoreError("database is locked")
    sweeper = housekeeping.PeriodicSweeper(mock_store)

    assert sweeper.run_once() == 0


def test_start_sweeps_immediately_and_stop_ends_thread():
    swept = threading.Event()
    mock_store = MagicMock()
    mock_store.sweep.side_effect = lambda **kwargs: swept.set() or 0
    sweeper = housekeeping.PeriodicSweeper(mock_store, interval_seconds=3600)

    sweeper.start()
    try:
        assert swept.wait(5)
        assert sweeper.running
    finally:
        sweeper.stop(timeout=5)

    assert not sweeper.running


def test_start_is_idempotent():
    mock_store = MagicMock()
    mock_store.sweep.return_value = 0
    sweeper = housekeeping.PeriodicSweeper(mock_store, interval_seconds=3600)

    sweeper.start()
    sweeper.start()
    sweeper.stop(timeout=5)

    assert mock_store.sweep.call_count == 1


def test_interval_must_be_positive():
    with pytest.raises(ValueError, match="positive"):
        housekeeping.PeriodicSweeper(MagicMock(), interval_seconds=0)
