"""HTTP provider adapter.

Provides an HTTP client for JSON APIs that maps provider responses onto the
adapter contract used by the orchestrator: rate-limit responses raise
``RateLimitedError`` with the provider's retry-after hint, every other
failure raises ``UpstreamUnavailableError``.
"""

import email.utils
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from ..errors import RateLimitedError, UpstreamUnavailableError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_USER_AGENT = "AmbientPi/1.0"
DEFAULT_RETRY_AFTER_HEADER = "Retry-After"
HTTP_TOO_MANY_REQUESTS = 429


def parse_retry_after(value: str | None) -> float | None:
    """Parse a retry-after header value into seconds from now.

    Accepts both delta-seconds (``"120"``) and HTTP-date forms. Returns
    ``None`` for missing or unparseable values.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable retry-after header", value=value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class HttpProviderAdapter:
    """HTTP client for one upstream JSON API.

    Thread-safe through thread-local storage of httpx.Client instances.
    Can be used as a context manager for automatic cleanup.
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        auth: tuple[str, str] | None = None,
        retry_after_header: str = DEFAULT_RETRY_AFTER_HEADER,
        rate_limit_phrases: Sequence[str] = (),
        error_keys: Sequence[str] = (),
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the adapter.

        Args:
            provider_id: Provider name reported in raised errors.
            base_url: Base URL of the API (e.g., "https://api.weather.gov").
            headers: Headers sent with every request.
            query: Query parameters sent with every request (API keys).
            timeout: Request timeout in seconds.
            auth: Optional basic-auth credentials.
            retry_after_header: Header carrying the provider's retry hint.
            rate_limit_phrases: Phrases that mark a 200 response body as a
                throttling notice (some providers never send 429).
            error_keys: Top-level body keys that mark a 200 response as an
                error.
            transport: Optional httpx transport, used by tests.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.provider_id = provider_id
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._auth = auth
        self._query = dict(query or {})
        self._retry_after_header = retry_after_header
        self._rate_limit_phrases = tuple(p.lower() for p in rate_limit_phrases)
        self._error_keys = tuple(error_keys)
        self._transport = transport

        self._headers = {
            "Accept": "application/json",
            "User-Agent": DEFAULT_USER_AGENT,
        }
        self._headers.update(headers or {})

        self._local = threading.local()
        self._clients_lock = threading.Lock()
        self._clients: list[httpx.Client] = []

    @property
    def client(self) -> httpx.Client:
        """Get or create the thread-local httpx client."""
        if not hasattr(self._local, "client") or self._local.client.is_closed:
            http_client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                auth=self._auth,
                follow_redirects=True,
                transport=self._transport,
            )
            with self._clients_lock:
                self._clients.append(http_client)
            self._local.client = http_client
        return self._local.client

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the HTTP clients of every thread that used this adapter."""
        with self._clients_lock:
            clients, self._clients = self._clients, []
        for http_client in clients:
            http_client.close()

    def get_json(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Make a GET request and return the decoded JSON body.

        Args:
            path: Endpoint path relative to the base URL.
            params: Optional query parameters, merged over the defaults.

        Returns:
            Decoded JSON document.

        Raises:
            RateLimitedError: On HTTP 429 or a throttling notice in the body.
            UpstreamUnavailableError: On any other HTTP, transport or
                decoding failure, or an error key in the body.
        """
        query = {**self._query, **(params or {})}
        start_time = time.time()

        try:
            logger.debug(
                "Making API request",
                provider=self.provider_id,
                method="GET",
                path=path,
            )
            response = self.client.get(path, params=query)
        except httpx.HTTPError as e:
            logger.warning(
                "API request failed",
                provider=self.provider_id,
                duration_seconds=round(time.time() - start_time, 3),
                error=str(e),
            )
            msg = f"{self.provider_id} request to {path} failed: {e}"
            raise UpstreamUnavailableError(self.provider_id, msg) from e

        logger.debug(
            "API request completed",
            provider=self.provider_id,
            status_code=response.status_code,
            duration_seconds=round(time.time() - start_time, 3),
        )

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(
                response.headers.get(self._retry_after_header),
            )
            raise RateLimitedError(self.provider_id, retry_after=retry_after)

        try:
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            msg = f"{self.provider_id} returned an unusable response for {path}: {e}"
            raise UpstreamUnavailableError(self.provider_id, msg) from e

        self._check_body(data)
        return data

    def _check_body(self, data: Any) -> None:
        if not isinstance(data, dict):
            return

        if self._rate_limit_phrases:
            for value in data.values():
                if isinstance(value, str) and any(
                    phrase in value.lower() for phrase in self._rate_limit_phrases
                ):
                    raise RateLimitedError(self.provider_id, message=value)

        for error_key in self._error_keys:
            if data.get(error_key):
                msg = f"{self.provider_id} returned an error: {data[error_key]}"
                raise UpstreamUnavailableError(self.provider_id, msg)

    def _follow_link(self, data: Any, link: str) -> Any:
        """Fetch the URL found at the dotted ``link`` path of ``data``."""
        target = data
        for part in link.split("."):
            target = target.get(part) if isinstance(target, dict) else None
        if not isinstance(target, str) or not target:
            msg = f"{self.provider_id} response has no link at {link}"
            raise UpstreamUnavailableError(self.provider_id, msg)
        return self.get_json(target)

    def fetcher(
        self,
        path_template: str,
        query_fields: Sequence[str] = (),
        defaults: Mapping[str, Any] | None = None,
        transform: Callable[[Any], Any] | None = None,
        follow: str | None = None,
    ) -> Callable[[Mapping[str, Any]], Any]:
        """Build a provider adapter function for a data source.

        The returned callable merges the request params over ``defaults``,
        formats ``path_template`` with the result and forwards the values
        named in ``query_fields`` as query parameters.

        Args:
            path_template: Endpoint path with ``{param}`` placeholders.
            query_fields: Params forwarded as query parameters.
            defaults: Param values used when the request omits them.
            transform: Normalizes the provider's payload into the shape
                the data source caches.
            follow: Dotted path to a URL in the first response that holds
                the actual payload (e.g. NWS ``properties.forecast``).

        Example:
            >>> nws.fetcher("/points/{lat},{lon}")({"lat": 30.9, "lon": -88.6})
        """
        defaults = dict(defaults or {})

        def fetch(params: Mapping[str, Any]) -> Any:
            merged = {**defaults, **params}
            try:
                path = path_template.format(**merged)
            except KeyError as e:
                msg = f"Missing request parameter {e} for {path_template}"
                raise ValueError(msg) from e
            query = {f: merged[f] for f in query_fields if f in merged}
            data = self.get_json(path, params=query)
            if follow:
                data = self._follow_link(data, follow)
            return transform(data) if transform is not None else data

        return fetch
