"""Periodic removal of long-expired cache entries.

Sweeping is housekeeping only: reads re-check freshness themselves, so a
failed or skipped sweep never affects correctness.
"""

import threading

import structlog

from .store import CacheStore

logger = structlog.get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 3600.0


class PeriodicSweeper:
    """Sweeps a cache store on a daemon thread.

    Entries are kept for ``grace_seconds`` past their expiry so that they
    remain available as a fallback when the provider is failing.
    """

    def __init__(
        self,
        store: CacheStore,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL,
        grace_seconds: float = 0.0,
    ):
        if interval_seconds <= 0:
            msg = "interval_seconds must be positive"
            raise ValueError(msg)
        self._store = store
        self._interval = interval_seconds
        self._grace = grace_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Sweep once, returning the number of entries removed (0 on failure)."""
        try:
            removed = self._store.sweep(grace_seconds=self._grace)
        except Exception:
            logger.exception("Cache sweep failed")
            return 0
        if removed:
            logger.info("Swept expired cache entries", removed=removed)
        return removed

    def _loop(self) -> None:
        self.run_once()
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        """Sweep immediately, then every interval until ``stop`` is called."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="ambient-cache-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
