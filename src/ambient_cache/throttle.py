"""Per-provider request throttling.

Each upstream provider gets a ``ProviderThrottle`` that enforces a minimum
interval between dispatches, an optional request budget per window, and a
cooldown set when the provider answers with a rate-limit response. Repeated
rate limits without an intervening success escalate the cooldown
exponentially up to a ceiling.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER = 60.0
DEFAULT_BACKOFF_BASE = 30.0
DEFAULT_BACKOFF_CEILING = 600.0


@dataclass(frozen=True)
class ThrottlePolicy:
    """Rate limiting policy for one provider. All durations in seconds."""

    min_interval: float = 0.0
    default_retry_after: float = DEFAULT_RETRY_AFTER
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_ceiling: float = DEFAULT_BACKOFF_CEILING
    max_requests: int | None = None
    window: float = 3600.0

    def backoff(self, attempt: int) -> float:
        """Exponential backoff for the given number of prior rate limits."""
        return min(self.backoff_base * 2**attempt, self.backoff_ceiling)


@dataclass(frozen=True)
class ThrottleSnapshot:
    """Point-in-time view of a provider throttle."""

    provider_id: str
    wait_seconds: float
    cooldown_seconds: float
    retry_count: int
    remaining_requests: int | None


class ProviderThrottle:
    """Gate for outbound requests to a single provider.

    Uses two locks: ``_gate`` serializes callers of ``acquire`` (and is held
    while a caller sleeps so waiters are released one at a time), while
    ``_state`` guards the timestamps and is only held briefly. Rate-limit
    reports therefore never wait behind a sleeping caller.
    """

    def __init__(
        self,
        provider_id: str,
        policy: ThrottlePolicy,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider_id = provider_id
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._gate = Lock()
        self._state = Lock()

        self._last_request_at: float | None = None
        self._cooldown_until = 0.0
        self._retry_count = 0
        self._window_started_at: float | None = None
        self._window_count = 0

    def _roll_window(self, now: float) -> None:
        if (
            self._window_started_at is None
            or now - self._window_started_at >= self.policy.window
        ):
            self._window_started_at = now
            self._window_count = 0

    def _required_wait(self, now: float) -> float:
        waits = [0.0, self._cooldown_until - now]
        if self._last_request_at is not None:
            waits.append(self.policy.min_interval - (now - self._last_request_at))
        if (
            self.policy.max_requests is not None
            and self._window_started_at is not None
            and self._window_count >= self.policy.max_requests
        ):
            waits.append(self._window_started_at + self.policy.window - now)
        return max(waits)

    def acquire(self) -> float:
        """Block until a request may be dispatched, then claim the slot.

        The required wait is recomputed after every sleep, so a cooldown
        reported while this caller was waiting still applies.

        Returns:
            The clock reading at which the request was cleared to dispatch.
        """
        with self._gate:
            while True:
                with self._state:
                    now = self._clock()
                    self._roll_window(now)
                    wait = self._required_wait(now)
                    if wait <= 0:
                        self._last_request_at = now
                        self._window_count += 1
                        return now
                logger.debug(
                    "Throttling request",
                    provider=self.provider_id,
                    wait_seconds=round(wait, 3),
                )
                self._sleep(wait)

    def report_rate_limited(self, retry_after: float | None = None) -> float:
        """Record a rate-limit response and start a cooldown.

        The cooldown is the larger of the provider's hint (or the policy
        default, capped at the backoff ceiling) and the exponential backoff
        for the current retry count. An explicit hint from the provider is
        honoured even when it exceeds the ceiling. A cooldown already in
        effect is never shortened.

        Args:
            retry_after: Seconds the provider asked us to wait, if given.

        Returns:
            Seconds from now until the provider may be called again.
        """
        with self._state:
            now = self._clock()
            if retry_after is None:
                hint = min(self.policy.default_retry_after, self.policy.backoff_ceiling)
            else:
                hint = max(0.0, retry_after)
            cooldown = max(hint, self.policy.backoff(self._retry_count))
            self._retry_count += 1
            self._cooldown_until = max(self._cooldown_until, now + cooldown)
            remaining = self._cooldown_until - now
            retry_count = self._retry_count

        logger.warning(
            "Provider rate limited",
            provider=self.provider_id,
            retry_after=retry_after,
            cooldown_seconds=round(remaining, 3),
            retry_count=retry_count,
        )
        return remaining

    def report_success(self) -> None:
        """Reset the backoff counter after a successful request."""
        with self._state:
            self._retry_count = 0

    def snapshot(self) -> ThrottleSnapshot:
        """Return the current throttle state without claiming a slot."""
        with self._state:
            now = self._clock()
            self._roll_window(now)
            remaining = None
            if self.policy.max_requests is not None:
                remaining = max(0, self.policy.max_requests - self._window_count)
            return ThrottleSnapshot(
                provider_id=self.provider_id,
                wait_seconds=self._required_wait(now),
                cooldown_seconds=max(0.0, self._cooldown_until - now),
                retry_count=self._retry_count,
                remaining_requests=remaining,
            )


class Throttle:
    """Registry of provider throttles keyed by provider id.

    Providers used without registration get ``default_policy``. The
    throttle never raises on behalf of a provider; it only delays.
    """

    def __init__(
        self,
        default_policy: ThrottlePolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._default_policy = default_policy or ThrottlePolicy()
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._providers: dict[str, ProviderThrottle] = {}

    def register(self, provider_id: str, policy: ThrottlePolicy) -> ProviderThrottle:
        """Register (or replace) the policy for a provider."""
        provider = ProviderThrottle(provider_id, policy, self._clock, self._sleep)
        with self._lock:
            self._providers[provider_id] = provider
        logger.debug(
            "Registered provider throttle",
            provider=provider_id,
            min_interval=policy.min_interval,
        )
        return provider

    def provider(self, provider_id: str) -> ProviderThrottle:
        """Return the throttle for ``provider_id``, creating it on first use."""
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                provider = ProviderThrottle(
                    provider_id,
                    self._default_policy,
                    self._clock,
                    self._sleep,
                )
                self._providers[provider_id] = provider
            return provider

    def provider_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._providers)

    def acquire(self, provider_id: str) -> float:
        return self.provider(provider_id).acquire()

    def report_rate_limited(
        self,
        provider_id: str,
        retry_after: float | None = None,
    ) -> float:
        return self.provider(provider_id).report_rate_limited(retry_after)

    def report_success(self, provider_id: str) -> None:
        self.provider(provider_id).report_success()

    def snapshot(self, provider_id: str) -> ThrottleSnapshot:
        return self.provider(provider_id).snapshot()
