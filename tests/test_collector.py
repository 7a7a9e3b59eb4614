"""Tests for CacheCollector through its public collect() method."""

from unittest.mock import MagicMock

import pytest

from ambient_cache import collector, keys, orchestrator, store, throttle
from ambient_cache.errors import RateLimitedError

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider_throttle(clock) -> throttle.Throttle:
    t = throttle.Throttle(clock=clock, sleep=clock.sleep)
    t.register("alphavantage", throttle.ThrottlePolicy(min_interval=15.0))
    return t


@pytest.fixture
def orch(clock, provider_throttle):
    with orchestrator.FetchOrchestrator(
        store.MemoryCacheStore(clock=clock),
        provider_throttle,
        clock=clock,
    ) as o:
        yield o


@pytest.fixture
def cache_collector(orch, provider_throttle) -> collector.CacheCollector:
    return collector.CacheCollector(orch, provider_throttle)


def stock_source(fetcher) -> orchestrator.DataSource:
    return orchestrator.DataSource(
        name="stock_quote",
        provider_id="alphavantage",
        max_age_minutes=60,
        fetcher=fetcher,
        key_builder=keys.key_builder("symbol", "stock", "stock_quote"),
    )


def samples_by_labels(metric) -> dict[tuple, float]:
    return {
        tuple(sorted(sample.labels.items())): sample.value
        for sample in metric.samples
        if not sample.name.endswith("_created")
    }


# ---------------------------------------------------------------------------
# Request outcomes
# ---------------------------------------------------------------------------


def test_collect_yields_all_metric_families(cache_collector):
    metrics = {m.name: m for m in cache_collector.collect()}
    assert set(metrics) == {
        "ambient_cache_requests",
        "ambient_provider_retry_count",
        "ambient_provider_cooldown_seconds",
        "ambient_provider_wait_seconds",
    }


def test_request_outcomes_are_labelled_by_source(orch, cache_collector):
    source = stock_source(MagicMock(return_value={"price": 1}))
    orch.fetch(source, {"symbol": "AAPL"})
    orch.fetch(source, {"symbol": "AAPL"})

    metrics = {m.name: m for m in cache_collector.collect()}
    samples = samples_by_labels(metrics["ambient_cache_requests"])

    assert samples[(("outcome", "miss"), ("source", "stock_quote"))] == 1
    assert samples[(("outcome", "fresh"), ("source", "stock_quote"))] == 1
    assert samples[(("outcome", "error"), ("source", "stock_quote"))] == 0


def test_registered_sources_report_zero_before_traffic(orch, cache_collector):
    orch.register(stock_source(MagicMock()))

    metrics = {m.name: m for m in cache_collector.collect()}
    samples = samples_by_labels(metrics["ambient_cache_requests"])

    assert len(samples) == len(orchestrator.OUTCOMES)
    assert set(samples.values()) == {0}


# ---------------------------------------------------------------------------
# Provider state
# ---------------------------------------------------------------------------


def test_provider_gauges_reflect_rate_limit(orch, cache_collector):
    fetcher = MagicMock(side_effect=RateLimitedError("alphavantage", retry_after=120))
    with pytest.raises(RateLimitedError):
        orch.fetch(stock_source(fetcher), {"symbol": "AAPL"})

    metrics = {m.name: m for m in cache_collector.collect()}
    provider = (("provider", "alphavantage"),)

    assert samples_by_labels(metrics["ambient_provider_retry_count"])[provider] == 1
    assert (
        samples_by_labels(metrics["ambient_provider_cooldown_seconds"])[provider] == 120
    )
    assert samples_by_labels(metrics["ambient_provider_wait_seconds"])[provider] == 120
