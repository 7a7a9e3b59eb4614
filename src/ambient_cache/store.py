"""Cache entry storage.

Provides the ``CacheStore`` protocol and two thread-safe implementations: a
durable SQLite store holding JSON documents, and a process-local memory store.
Both keep at most one entry per key (upsert semantics) and never check
freshness themselves; that is the caller's job.
"""

import json
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

import structlog

from .errors import StoreError

logger = structlog.get_logger(__name__)

SECONDS_PER_MINUTE = 60.0

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
)
"""
_EXPIRES_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_cache_entries_expires ON cache_entries(expires_at)"
)


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload and its timestamps (epoch seconds)."""

    key: str
    value: Any
    created_at: float
    expires_at: float


class CacheStore(Protocol):
    """Storage contract used by the orchestrator and the sweeper."""

    def get(self, key: str) -> CacheEntry | None: ...

    def set(self, key: str, value: Any, max_age_minutes: float) -> CacheEntry: ...

    def sweep(self, now: float | None = None, grace_seconds: float = 0.0) -> int: ...


def _build_entry(
    key: str,
    value: Any,
    max_age_minutes: float,
    now: float,
) -> CacheEntry:
    return CacheEntry(
        key=key,
        value=value,
        created_at=now,
        expires_at=now + max_age_minutes * SECONDS_PER_MINUTE,
    )


class MemoryCacheStore:
    """Process-local cache store guarded by a lock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: Any, max_age_minutes: float) -> CacheEntry:
        entry = _build_entry(key, value, max_age_minutes, self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def sweep(self, now: float | None = None, grace_seconds: float = 0.0) -> int:
        cutoff = (self._clock() if now is None else now) - grace_seconds
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at < cutoff]
            for key in expired:
                del self._entries[key]
        return len(expired)


class SqliteCacheStore:
    """Durable cache store backed by a single SQLite table.

    Values are stored as JSON text, so payloads must be JSON-serializable.
    One connection is shared across threads (``check_same_thread=False``)
    with all statements serialized through a lock; WAL mode keeps readers
    in other processes from blocking on writes.

    Example:
        >>> store = SqliteCacheStore("cache.db")
        >>> store.set("stock:AAPL", {"price": 187.2}, max_age_minutes=60)
        >>> store.get("stock:AAPL").value
        {'price': 187.2}
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Callable[[], float] = time.time,
    ):
        """Open (or create) the cache database.

        Args:
            db_path: Path to the SQLite file, or ``":memory:"``.
            clock: Wall-clock source for entry timestamps.

        Raises:
            StoreError: If the database cannot be opened or initialized.
        """
        self.db_path = str(db_path)
        self._clock = clock
        self._lock = Lock()

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,  # autocommit
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute(_SCHEMA)
            self._conn.execute(_EXPIRES_INDEX)
        except sqlite3.Error as e:
            msg = f"Failed to open cache database {self.db_path}: {e}"
            raise StoreError(msg) from e

        logger.info("Opened cache database", db_path=self.db_path)

    def __len__(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()
        return int(row[0])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry stored under ``key``, or ``None``.

        Read failures and undecodable rows are logged and reported as a
        miss, since refetching is always a safe fallback.
        """
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value, created_at, expires_at FROM cache_entries "
                    "WHERE key = ?",
                    (key,),
                ).fetchone()
            if row is None:
                return None
            value = json.loads(row[0])
        except (sqlite3.Error, ValueError):
            logger.warning(
                "Cache read failed, treating as miss",
                key=key,
                exc_info=True,
            )
            return None

        return CacheEntry(key=key, value=value, created_at=row[1], expires_at=row[2])

    def set(self, key: str, value: Any, max_age_minutes: float) -> CacheEntry:
        """Insert or replace the entry for ``key``.

        The returned entry holds the decoded document, as later reads do.

        Raises:
            StoreError: If the value cannot be serialized or written.
        """
        try:
            document = json.dumps(value)
            entry = _build_entry(
                key,
                json.loads(document),
                max_age_minutes,
                self._clock(),
            )
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO cache_entries "
                    "(key, value, created_at, expires_at) VALUES (?, ?, ?, ?)",
                    (key, document, entry.created_at, entry.expires_at),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            msg = f"Failed to write cache entry {key}: {e}"
            raise StoreError(msg) from e

        logger.debug("Cached entry", key=key, max_age_minutes=max_age_minutes)
        return entry

    def sweep(self, now: float | None = None, grace_seconds: float = 0.0) -> int:
        """Delete entries that expired more than ``grace_seconds`` ago.

        Returns:
            Number of rows removed.

        Raises:
            StoreError: If the delete fails.
        """
        cutoff = (self._clock() if now is None else now) - grace_seconds
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at < ?",
                    (cutoff,),
                )
        except sqlite3.Error as e:
            msg = f"Failed to sweep cache entries: {e}"
            raise StoreError(msg) from e
        return cursor.rowcount
