"""Upstream provider adapters.

Provides an HTTP adapter that turns JSON API responses into cacheable
payloads and maps rate-limit and failure responses onto the cache layer's
error types. Normalizing transforms are passed in per data source.

Exports:
    HttpProviderAdapter: HTTP client with thread-local httpx clients.
    parse_retry_after: Retry-after header parsing.
    DEFAULT_TIMEOUT: Default HTTP request timeout.
"""

from .client import DEFAULT_TIMEOUT, HttpProviderAdapter, parse_retry_after

__all__ = [
    "DEFAULT_TIMEOUT",
    "HttpProviderAdapter",
    "parse_retry_after",
]
