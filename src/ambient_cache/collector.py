"""Prometheus collector for cache and throttle state.

Reads the orchestrator's per-source counters and the provider throttles at
scrape time, so nothing is registered on the global registry.
"""

from collections.abc import Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .orchestrator import FetchOrchestrator
from .throttle import Throttle


class CacheCollector(Collector):
    """Exposes request outcomes per data source and throttle state per provider."""

    def __init__(self, orchestrator: FetchOrchestrator, throttle: Throttle):
        self._orchestrator = orchestrator
        self._throttle = throttle

    def collect(self) -> Iterator[Metric]:
        requests = CounterMetricFamily(
            "ambient_cache_requests",
            "cache requests by data source and outcome",
            labels=["source", "outcome"],
        )
        for source, outcomes in sorted(self._orchestrator.stats().items()):
            for outcome, count in outcomes.items():
                requests.add_metric([source, outcome], count)
        yield requests

        retry_count = GaugeMetricFamily(
            "ambient_provider_retry_count",
            "consecutive rate-limit responses since the last success",
            labels=["provider"],
        )
        cooldown = GaugeMetricFamily(
            "ambient_provider_cooldown_seconds",
            "seconds until a rate-limit cooldown ends",
            labels=["provider"],
        )
        wait = GaugeMetricFamily(
            "ambient_provider_wait_seconds",
            "seconds until the next request may be dispatched",
            labels=["provider"],
        )
        for provider_id in self._throttle.provider_ids():
            snapshot = self._throttle.snapshot(provider_id)
            retry_count.add_metric([provider_id], snapshot.retry_count)
            cooldown.add_metric([provider_id], snapshot.cooldown_seconds)
            wait.add_metric([provider_id], snapshot.wait_seconds)
        yield retry_count
        yield cooldown
        yield wait
