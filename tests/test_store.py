"""Tests for the memory and SQLite cache stores.

Behaviour shared by both stores (miss, upsert, timestamps, sweep) is
parametrized; durability and error degradation are SQLite-specific.
"""

import threading

import pytest

from ambient_cache import store
from ambient_cache.errors import StoreError

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sqlite"])
def cache_store(request, clock, tmp_path):
    """Each test runs against both store implementations."""
    if request.param == "memory":
        yield store.MemoryCacheStore(clock=clock)
    else:
        s = store.SqliteCacheStore(tmp_path / "cache.db", clock=clock)
        yield s
        s.close()


# ---------------------------------------------------------------------------
# get / set
# ---------------------------------------------------------------------------


def test_get_missing_key_returns_none(cache_store):
    assert cache_store.get("stock:AAPL") is None


def test_set_records_timestamps_from_max_age(cache_store, clock):
    """expires_at is created_at plus the max age in minutes."""
    payload = {"results": [{"name": "Falcon 9 | Starlink"}]}

    entry = cache_store.set("space:launches", payload, max_age_minutes=15)

    assert entry.created_at == clock()
    assert entry.expires_at == clock() + 15 * 60
    stored = cache_store.get("space:launches")
    assert stored == entry
    assert stored.value == payload


def test_set_replaces_existing_entry(cache_store, clock):
    """At most one entry per key; a refresh replaces it wholesale."""
    cache_store.set("stock:AAPL", {"price": 1}, max_age_minutes=60)
    clock.advance(120)
    cache_store.set("stock:AAPL", {"price": 2}, max_age_minutes=60)

    stored = cache_store.get("stock:AAPL")
    assert stored.value == {"price": 2}
    assert stored.created_at == clock()
    assert len(cache_store) == 1


def test_get_returns_expired_entries(cache_store, clock):
    """The store never filters by expiry; freshness is the caller's concern."""
    cache_store.set("weather:1.0000,2.0000", {"temp": 70}, max_age_minutes=30)
    clock.advance(10 * 60 * 60)
    assert cache_store.get("weather:1.0000,2.0000").value == {"temp": 70}


# ---------------------------------------------------------------------------
# sweep
# ---------------------------------------------------------------------------


def test_sweep_removes_only_expired_entries(cache_store, clock):
    cache_store.set("short", 1, max_age_minutes=1)
    cache_store.set("long", 2, max_age_minutes=60)
    clock.advance(5 * 60)

    removed = cache_store.sweep()

    assert removed == 1
    assert cache_store.get("short") is None
    assert cache_store.get("long").value == 2


def test_sweep_keeps_entries_within_grace_window(cache_store, clock):
    cache_store.set("short", 1, max_age_minutes=1)
    clock.advance(5 * 60)

    assert cache_store.sweep(grace_seconds=3600) == 0
    assert cache_store.get("short") is not None


def test_sweep_with_explicit_now(cache_store, clock):
    cache_store.set("short", 1, max_age_minutes=1)
    assert cache_store.sweep(now=clock() + 61) == 1


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


def test_sqlite_entries_survive_reopen(tmp_path, clock):
    path = tmp_path / "nested" / "cache.db"
    with store.SqliteCacheStore(path, clock=clock) as first:
        first.set("stock:AAPL", {"price": 187.25}, max_age_minutes=60)

    with store.SqliteCacheStore(path, clock=clock) as second:
        entry = second.get("stock:AAPL")

    assert entry is not None
    assert entry.value == {"price": 187.25}
    assert entry.created_at == clock()


def test_sqlite_set_returns_the_value_later_reads_see(tmp_path, clock):
    with store.SqliteCacheStore(tmp_path / "cache.db", clock=clock) as s:
        written = s.set("flight:lamin=1", {"bbox": (30, 31), 1: "a"}, 10)
        read = s.get("flight:lamin=1")

    assert written.value == {"bbox": [30, 31], "1": "a"}
    assert written == read


def test_sqlite_get_degrades_to_miss_on_error(tmp_path):
    """Read failures are reported as a miss instead of raising."""
    s = store.SqliteCacheStore(tmp_path / "cache.db")
    s.set("stock:AAPL", {"price": 1}, max_age_minutes=60)
    s.close()

    assert s.get("stock:AAPL") is None


def test_sqlite_set_raises_store_error_on_closed_database(tmp_path):
    s = store.SqliteCacheStore(tmp_path / "cache.db")
    s.close()

    with pytest.raises(StoreError):
        s.set("stock:AAPL", {"price": 1}, max_age_minutes=60)


def test_sqlite_set_raises_store_error_for_unserializable_value(tmp_path):
    with store.SqliteCacheStore(tmp_path / "cache.db") as s:
        with pytest.raises(StoreError):
            s.set("bad", {"when": object()}, max_age_minutes=1)
        assert s.get("bad") is None


def test_sqlite_open_failure_raises_store_error(tmp_path):
    """A directory in place of the database file cannot be opened."""
    target = tmp_path / "cache.db"
    target.mkdir()
    with pytest.raises(StoreError):
        store.SqliteCacheStore(target)


def test_sqlite_concurrent_writers_last_one_wins(tmp_path):
    thread_count = 16
    barrier = threading.Barrier(thread_count)

    with store.SqliteCacheStore(tmp_path / "cache.db") as s:

        def worker(i):
            barrier.wait()
            s.set("flight:lamin=1", {"writer": i}, max_age_minutes=10)

        threads = [
            threading.Thread(target=worker, args=(i,)) for i in range(thread_count)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(s) == 1
        assert s.get("flight:lamin=1").value["writer"] in range(thread_count)
