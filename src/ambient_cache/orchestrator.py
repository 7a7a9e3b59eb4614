"""Fetch-and-cache orchestration.

``FetchOrchestrator`` runs the same algorithm for every data source:

1. Look up the cache entry and classify it against the source's max age.
2. Fresh entries are returned as-is.
3. Stale entries are returned immediately while a background refresh runs.
4. Missing entries are fetched through the provider throttle; the caller
   waits for the result.

A source may name fallback providers, tried in order through their own
throttles when the primary provider fails.

Refreshes run on executors owned by the orchestrator, one per primary
provider, so a throttled provider only delays its own sources. They are
coalesced per cache key: concurrent callers for the same key share one
upstream request and all observe the same value or the same exception. A
caller that gives up waiting does not cancel the refresh.
"""

import concurrent.futures
import functools
import time
from collections import Counter
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Any, TypeAlias

import structlog

from .errors import (
    FetchTimeoutError,
    RateLimitedError,
    StoreError,
    UpstreamError,
    UpstreamUnavailableError,
)
from .freshness import Freshness, classify
from .keys import KeyBuilder, Params
from .store import SECONDS_PER_MINUTE, CacheEntry, CacheStore
from .throttle import Throttle
from .transforms import Transform

logger = structlog.get_logger(__name__)

Fetcher: TypeAlias = Callable[[Params], Any]
Validator: TypeAlias = Callable[[Any], bool]

OUTCOMES = (
    "fresh",
    "stale",
    "miss",
    "degraded",
    "coalesced",
    "fallback",
    "error",
)
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class ProviderFetcher:
    """A fetcher bound to the provider whose throttle it must pass."""

    provider_id: str
    fetcher: Fetcher


@dataclass(frozen=True)
class DataSource:
    """One cacheable upstream resource.

    Attributes:
        name: Unique source name, used for lookups and metrics labels.
        provider_id: Throttle the source's requests are counted against.
            Several sources may share one provider.
        max_age_minutes: Age after which entries are considered stale.
        fetcher: Provider adapter called with the request params. Raises
            ``RateLimitedError`` when the provider declines the request.
        key_builder: Maps request params to the cache key.
        validator: Optional structural check; cached or fetched values it
            rejects are treated as missing or failed respectively.
        transform: Optional normalization applied to every fetched payload
            before validation and caching.
        fallbacks: Providers tried in order when the primary one fails.
            Their fetchers must return payloads of the same shape.
    """

    name: str
    provider_id: str
    max_age_minutes: float
    fetcher: Fetcher
    key_builder: KeyBuilder
    validator: Validator | None = None
    transform: Transform | None = None
    fallbacks: tuple[ProviderFetcher, ...] = ()

    def accepts(self, value: Any) -> bool:
        return self.validator is None or bool(self.validator(value))

    def chain(self) -> tuple[ProviderFetcher, ...]:
        """The primary provider followed by the fallbacks."""
        return (ProviderFetcher(self.provider_id, self.fetcher), *self.fallbacks)


@dataclass(frozen=True)
class FetchResult:
    """Value returned to callers, tagged with how current it is.

    ``degraded`` is set when the value was served because an upstream call
    failed; such results are always ``STALE``.
    """

    key: str
    value: Any
    freshness: Freshness
    created_at: float
    degraded: bool = False

    @property
    def is_stale(self) -> bool:
        return self.freshness is Freshness.STALE


class FetchOrchestrator:
    """Coordinates the cache store, the throttle and the data sources."""

    def __init__(
        self,
        store: CacheStore,
        throttle: Throttle,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the orchestrator.

        Args:
            store: Cache store shared by all sources.
            throttle: Provider throttle registry.
            max_workers: Refresh threads per primary provider. Requests to
                one provider are serialized by its throttle, so extra
                threads only overlap the providers' response times.
            clock: Wall-clock source, must match the store's clock.
        """
        self._store = store
        self._throttle = throttle
        self._clock = clock
        self._max_workers = max_workers
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._closed = False
        self._lock = Lock()
        self._inflight: dict[str, Future[CacheEntry]] = {}
        self._sources: dict[str, DataSource] = {}
        self._stats: dict[str, Counter[str]] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self, wait: bool = True) -> None:
        """Stop accepting refreshes and optionally wait for running ones."""
        with self._lock:
            self._closed = True
            executors = list(self._executors.values())
        for executor in executors:
            executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Source registry
    # ------------------------------------------------------------------

    def register(self, source: DataSource) -> DataSource:
        with self._lock:
            self._sources[source.name] = source
            self._stats.setdefault(source.name, Counter())
        logger.info(
            "Registered data source",
            source=source.name,
            provider=source.provider_id,
            max_age_minutes=source.max_age_minutes,
        )
        return source

    def source(self, name: str) -> DataSource:
        with self._lock:
            try:
                return self._sources[name]
            except KeyError:
                msg = f"Unknown data source: {name}"
                raise KeyError(msg) from None

    def sources(self) -> list[DataSource]:
        with self._lock:
            return list(self._sources.values())

    def _resolve(self, source: DataSource | str) -> DataSource:
        return self.source(source) if isinstance(source, str) else source

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def fetch(
        self,
        source: DataSource | str,
        params: Params | None = None,
        timeout: float | None = None,
    ) -> FetchResult:
        """Return the value for ``params``, from cache where possible.

        Args:
            source: Data source, or the name of a registered one.
            params: Request parameters; normalized into the cache key.
            timeout: Seconds to wait for an upstream fetch on a cache miss.
                ``None`` waits indefinitely.

        Returns:
            A ``FetchResult`` tagged ``FRESH`` or ``STALE``.

        Raises:
            RateLimitedError: The provider declined and nothing is cached.
            UpstreamUnavailableError: The fetch failed and nothing is cached.
            FetchTimeoutError: ``timeout`` elapsed before the fetch finished.
        """
        source = self._resolve(source)
        params = params or {}
        key = source.key_builder(params)

        entry = self._lookup(source, key)
        state = classify(entry, source.max_age_minutes, self._clock())

        if state is Freshness.FRESH:
            self._count(source, "fresh")
            logger.debug("Cache hit", source=source.name, key=key)
            return FetchResult(key, entry.value, Freshness.FRESH, entry.created_at)

        if state is Freshness.STALE:
            self._count(source, "stale")
            self._start_refresh(source, key, params)
            logger.debug(
                "Serving stale entry, refreshing in background",
                source=source.name,
                key=key,
            )
            return FetchResult(key, entry.value, Freshness.STALE, entry.created_at)

        self._count(source, "miss")
        future = self._start_refresh(source, key, params)
        try:
            fetched = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            self._count(source, "error")
            msg = f"Timed out after {timeout}s waiting for {key}"
            raise FetchTimeoutError(source.provider_id, msg) from e
        except UpstreamError as e:
            fallback = self._lookup(source, key)
            if fallback is None:
                self._count(source, "error")
                raise
            self._count(source, "degraded")
            logger.warning(
                "Serving cached entry after failed fetch",
                source=source.name,
                key=key,
                error=str(e),
            )
            return FetchResult(
                key,
                fallback.value,
                Freshness.STALE,
                fallback.created_at,
                degraded=True,
            )

        return FetchResult(key, fetched.value, Freshness.FRESH, fetched.created_at)

    def peek(
        self,
        source: DataSource | str,
        params: Params | None = None,
    ) -> FetchResult | None:
        """Return the cached value without contacting the provider.

        Returns:
            The cached result tagged with its freshness, or ``None`` when
            nothing usable is cached.
        """
        source = self._resolve(source)
        key = source.key_builder(params or {})
        entry = self._lookup(source, key)
        state = classify(entry, source.max_age_minutes, self._clock())
        if state is Freshness.ABSENT:
            return None
        return FetchResult(key, entry.value, state, entry.created_at)

    def in_flight(self, key: str) -> Future[CacheEntry] | None:
        """Return the refresh currently running for ``key``, if any."""
        with self._lock:
            return self._inflight.get(key)

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-source request counters keyed by outcome."""
        with self._lock:
            return {
                name: {outcome: counter[outcome] for outcome in OUTCOMES}
                for name, counter in self._stats.items()
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _count(self, source: DataSource, outcome: str) -> None:
        with self._lock:
            self._stats.setdefault(source.name, Counter())[outcome] += 1

    def _lookup(self, source: DataSource, key: str) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is not None and not source.accepts(entry.value):
            logger.warning(
                "Discarding invalid cache entry",
                source=source.name,
                key=key,
            )
            return None
        return entry

    def _executor_for(self, provider_id: str) -> ThreadPoolExecutor:
        """Return the refresh executor of a provider. Caller holds the lock."""
        if self._closed:
            msg = "Cannot schedule refreshes after close()"
            raise RuntimeError(msg)
        executor = self._executors.get(provider_id)
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix=f"ambient-refresh-{provider_id}",
            )
            self._executors[provider_id] = executor
        return executor

    def _start_refresh(
        self,
        source: DataSource,
        key: str,
        params: Params,
    ) -> Future[CacheEntry]:
        """Join the refresh in flight for ``key`` or submit a new one."""
        with self._lock:
            future = self._inflight.get(key)
            if future is not None:
                self._stats.setdefault(source.name, Counter())["coalesced"] += 1
                return future
            executor = self._executor_for(source.provider_id)
            future = executor.submit(self._refresh, source, key, dict(params))
            self._inflight[key] = future

        # Registered outside the lock: a future that is already done runs
        # the callback immediately in this thread.
        future.add_done_callback(functools.partial(self._finish_refresh, key))
        return future

    def _finish_refresh(self, key: str, future: Future[CacheEntry]) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Refresh failed", key=key, error=str(error))

    def _refresh(
        self,
        source: DataSource,
        key: str,
        params: Mapping[str, Any],
    ) -> CacheEntry:
        """Fetch from the first provider in the chain that succeeds and cache it.

        Raises:
            UpstreamError: The primary provider's error, when every provider
                in the chain failed.
        """
        chain = source.chain()
        first_error: UpstreamError | None = None
        for attempt, provider in enumerate(chain):
            start = time.time()
            # A provider cooling down is skipped while another one remains.
            if attempt + 1 < len(chain):
                snapshot = self._throttle.snapshot(provider.provider_id)
                cooldown = snapshot.cooldown_seconds
                if cooldown > 0:
                    first_error = first_error or RateLimitedError(
                        provider.provider_id,
                        retry_after=cooldown,
                    )
                    logger.info(
                        "Provider cooling down, trying fallback",
                        source=source.name,
                        provider=provider.provider_id,
                        fallback=chain[attempt + 1].provider_id,
                        cooldown_seconds=round(cooldown, 1),
                    )
                    continue
            try:
                value = self._fetch_from(source, key, provider, params)
            except UpstreamError as e:
                first_error = first_error or e
                if attempt + 1 < len(chain):
                    logger.warning(
                        "Provider failed, trying fallback",
                        source=source.name,
                        provider=provider.provider_id,
                        fallback=chain[attempt + 1].provider_id,
                        error=str(e),
                    )
                continue

            if attempt > 0:
                self._count(source, "fallback")
            entry = self._save(source, key, value)
            logger.info(
                "Fetched fresh data",
                source=source.name,
                provider=provider.provider_id,
                key=key,
                duration_seconds=round(time.time() - start, 3),
            )
            return entry

        raise first_error

    def _fetch_from(
        self,
        source: DataSource,
        key: str,
        provider: ProviderFetcher,
        params: Mapping[str, Any],
    ) -> Any:
        """Call one provider through its throttle and normalize the payload."""
        provider_id = provider.provider_id
        self._throttle.acquire(provider_id)

        try:
            value = provider.fetcher(params)
        except RateLimitedError as e:
            cooldown = self._throttle.report_rate_limited(provider_id, e.retry_after)
            raise RateLimitedError(provider_id, retry_after=cooldown) from e
        except UpstreamUnavailableError:
            raise
        except Exception as e:
            msg = f"{provider_id} request failed: {e}"
            raise UpstreamUnavailableError(provider_id, msg) from e

        self._throttle.report_success(provider_id)

        if source.transform is not None:
            try:
                value = source.transform(value)
            except Exception as e:
                msg = f"{provider_id} returned a payload {source.name} cannot use: {e}"
                raise UpstreamUnavailableError(provider_id, msg) from e

        if not source.accepts(value):
            msg = f"{provider_id} returned an invalid payload for {key}"
            raise UpstreamUnavailableError(provider_id, msg)
        return value

    def _save(self, source: DataSource, key: str, value: Any) -> CacheEntry:
        try:
            return self._store.set(key, value, source.max_age_minutes)
        except StoreError:
            logger.warning("Failed to cache fetched value", key=key, exc_info=True)
            now = self._clock()
            return CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + source.max_age_minutes * SECONDS_PER_MINUTE,
            )
