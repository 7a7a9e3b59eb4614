"""Exception types raised by the cache layer.

A cache miss is not an exception (lookups return ``None``) and a stale serve
is a successful result tagged with ``Freshness.STALE``. Only failures that
leave a caller without any data surface as exceptions.
"""


class CacheError(Exception):
    """Base class for all cache layer errors."""


class StoreError(CacheError):
    """Raised when the backing store cannot persist an entry."""


class UpstreamError(CacheError):
    """Base class for failures reported by an upstream provider."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(message)
        self.provider_id = provider_id


class RateLimitedError(UpstreamError):
    """Raised when a provider declines a request (HTTP 429 or equivalent).

    Attributes:
        retry_after: Seconds the provider asked us to wait, or the cooldown
            the throttle settled on. ``None`` when no estimate is known.
    """

    def __init__(
        self,
        provider_id: str,
        retry_after: float | None = None,
        message: str | None = None,
    ):
        if message is None:
            message = f"{provider_id} rate limited the request"
            if retry_after is not None:
                message += f" (retry after {retry_after:g}s)"
        super().__init__(provider_id, message)
        self.retry_after = retry_after


class UpstreamUnavailableError(UpstreamError):
    """Raised for network failures, 5xx responses and unusable payloads."""


class FetchTimeoutError(UpstreamUnavailableError):
    """Raised when a caller stops waiting on an in-flight fetch.

    The fetch itself keeps running and still populates the cache.
    """
