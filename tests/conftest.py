"""Shared fixtures for the cache layer tests."""

import threading

import pytest


class FakeClock:
    """Manually advanced clock whose ``sleep`` moves time forward instantly.

    Starts at an integral value so that interval arithmetic stays exact.
    """

    def __init__(self, start: float = 1_000_000.0):
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds
            self.sleeps.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
