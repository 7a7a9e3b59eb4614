"""Configuration and logging setup for the cache gateway."""

import json
import logging
import pathlib
from typing import Any

import pydantic
import structlog

from . import throttle, upstream
from .keys import KeyStyle
from .transforms import TRANSFORMS

CONFIG_ENV_VAR = "AMBIENT_CACHE_CONFIG_PATH"


class ProviderConfig(pydantic.BaseModel):
    """Connection and rate-limit settings for one upstream provider."""

    base_url: str = pydantic.Field(description="Base URL of the provider API")
    headers: dict[str, str] = pydantic.Field(
        default_factory=dict,
        description="Headers sent with every request",
    )
    query: dict[str, str] = pydantic.Field(
        default_factory=dict,
        description="Query parameters sent with every request",
    )
    api_key_env: str | None = pydantic.Field(
        None,
        description="Environment variable holding the API key",
    )
    api_key_param: str = pydantic.Field(
        "apikey",
        description="Query parameter the API key is sent as",
    )
    username_env: str | None = pydantic.Field(
        None,
        description="Environment variable holding the basic-auth username",
    )
    password_env: str | None = pydantic.Field(
        None,
        description="Environment variable holding the basic-auth password",
    )
    timeout: float = pydantic.Field(
        upstream.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    retry_after_header: str = pydantic.Field(
        "Retry-After",
        description="Response header carrying the retry hint on HTTP 429",
    )
    rate_limit_phrases: list[str] = pydantic.Field(
        default_factory=list,
        description="Body phrases that signal throttling on a 200 response",
    )
    error_keys: list[str] = pydantic.Field(
        default_factory=list,
        description="Top-level body keys that signal an error on a 200 response",
    )
    min_interval_seconds: float = pydantic.Field(
        0.0,
        description="Minimum seconds between requests",
        ge=0,
    )
    default_retry_after_seconds: float = pydantic.Field(
        throttle.DEFAULT_RETRY_AFTER,
        description="Cooldown when a rate-limit response has no retry hint",
        ge=0,
    )
    backoff_base_seconds: float = pydantic.Field(
        throttle.DEFAULT_BACKOFF_BASE,
        description="First step of the exponential backoff",
        ge=0,
    )
    backoff_ceiling_seconds: float = pydantic.Field(
        throttle.DEFAULT_BACKOFF_CEILING,
        description="Upper bound of the exponential backoff",
        ge=0,
    )
    max_requests: int | None = pydantic.Field(
        None,
        description="Request budget per window, unlimited when unset",
        gt=0,
    )
    window_seconds: float = pydantic.Field(
        3600.0,
        description="Length of the request budget window",
        gt=0,
    )

    def throttle_policy(self) -> throttle.ThrottlePolicy:
        return throttle.ThrottlePolicy(
            min_interval=self.min_interval_seconds,
            default_retry_after=self.default_retry_after_seconds,
            backoff_base=self.backoff_base_seconds,
            backoff_ceiling=self.backoff_ceiling_seconds,
            max_requests=self.max_requests,
            window=self.window_seconds,
        )


class FetchConfig(pydantic.BaseModel):
    """How one provider's endpoint is called for a data source."""

    provider: str = pydantic.Field(description="Key into GatewayConfig.providers")
    path: str = pydantic.Field(
        description="Endpoint path, formatted with the request params",
    )
    query_fields: list[str] = pydantic.Field(
        default_factory=list,
        description="Request params forwarded as query parameters",
    )
    defaults: dict[str, Any] = pydantic.Field(
        default_factory=dict,
        description="Param values used when the request omits them",
    )
    follow: str | None = pydantic.Field(
        None,
        description="Dotted path to a URL in the response to fetch instead",
    )
    transform: str | None = pydantic.Field(
        None,
        description="Name of the transform applied to the payload",
    )

    @pydantic.field_validator("transform")
    @classmethod
    def _check_transform(cls, value: str | None) -> str | None:
        if value is not None and value not in TRANSFORMS:
            msg = f"Unknown transform {value!r}, expected one of {sorted(TRANSFORMS)}"
            raise ValueError(msg)
        return value


class FallbackConfig(FetchConfig):
    """A provider tried when the source's primary provider fails."""


class SourceConfig(FetchConfig):
    """A cacheable resource served by one provider."""

    max_age_minutes: float = pydantic.Field(
        description="Age after which cached entries are stale",
        gt=0,
    )
    key_style: KeyStyle = pydantic.Field(
        "params",
        description="How request params map to the cache key",
    )
    namespace: str | None = pydantic.Field(
        None,
        description="Cache key prefix, defaults to the source name",
    )
    key_fields: list[str] = pydantic.Field(
        default_factory=list,
        description="Further params that distinguish cache entries",
    )
    fallbacks: list[FallbackConfig] = pydantic.Field(
        default_factory=list,
        description="Providers tried in order when the primary one fails",
    )


def default_providers() -> dict[str, ProviderConfig]:
    """Providers used by the dashboard, with their observed rate limits."""
    return {
        "nws": ProviderConfig(
            base_url="https://api.weather.gov",
            headers={"Accept": "application/geo+json"},
            min_interval_seconds=1.0,
        ),
        "openweather": ProviderConfig(
            base_url="https://api.openweathermap.org/data/2.5",
            query={"units": "imperial"},
            api_key_env="OPENWEATHER_API_KEY",
            api_key_param="appid",
            min_interval_seconds=1.0,
        ),
        "opensky": ProviderConfig(
            base_url="https://opensky-network.org/api",
            username_env="OPENSKY_USERNAME",
            password_env="OPENSKY_PASSWORD",
            timeout=30.0,
            retry_after_header="X-Rate-Limit-Retry-After-Seconds",
            min_interval_seconds=10.0,
            max_requests=500,
            window_seconds=3600.0,
        ),
        "alphavantage": ProviderConfig(
            base_url="https://www.alphavantage.co",
            api_key_env="ALPHA_VANTAGE_API_KEY",
            timeout=5.0,
            rate_limit_phrases=["standard API rate limit", "API call frequency"],
            error_keys=["Error Message"],
            min_interval_seconds=15.0,
        ),
        "yahoo": ProviderConfig(
            base_url="https://query1.finance.yahoo.com",
            timeout=5.0,
            error_keys=["finance"],
            min_interval_seconds=2.0,
        ),
        "thespacedevs": ProviderConfig(
            base_url="https://ll.thespacedevs.com/2.2.0",
            min_interval_seconds=10.0,
        ),
        "n2yo": ProviderConfig(
            base_url="https://api.n2yo.com/rest/v1",
            api_key_env="N2YO_API_KEY",
            api_key_param="apiKey",
            error_keys=["error"],
            min_interval_seconds=10.0,
        ),
    }


def default_sources() -> dict[str, SourceConfig]:
    """Cached resources used by the dashboard displays."""
    return {
        "points": SourceConfig(
            provider="nws",
            path="/points/{lat},{lon}",
            key_style="coordinates",
            max_age_minutes=24 * 60,
        ),
        "alerts": SourceConfig(
            provider="nws",
            path="/alerts/active?point={lat},{lon}",
            key_style="coordinates",
            max_age_minutes=15,
        ),
        "weather": SourceConfig(
            provider="nws",
            path="/points/{lat},{lon}",
            follow="properties.forecast",
            transform="nws_forecast",
            key_style="coordinates",
            max_age_minutes=30,
            fallbacks=[
                FallbackConfig(
                    provider="openweather",
                    path="/weather",
                    query_fields=["lat", "lon"],
                    transform="openweather_current",
                ),
            ],
        ),
        "flights": SourceConfig(
            provider="opensky",
            path="/states/all",
            namespace="flight",
            query_fields=["lamin", "lamax", "lomin", "lomax"],
            max_age_minutes=10,
        ),
        "stock_quote": SourceConfig(
            provider="alphavantage",
            path="/query",
            namespace="stock",
            key_style="symbol",
            query_fields=["function", "symbol"],
            defaults={"function": "GLOBAL_QUOTE"},
            max_age_minutes=60,
            fallbacks=[
                FallbackConfig(
                    provider="yahoo",
                    path="/v8/finance/chart/{symbol}",
                    query_fields=["range", "interval"],
                    defaults={"range": "1d", "interval": "1d"},
                    transform="yahoo_chart_quote",
                ),
            ],
        ),
        "stock_history": SourceConfig(
            provider="alphavantage",
            path="/query",
            key_style="symbol",
            query_fields=["function", "symbol", "outputsize"],
            defaults={"function": "TIME_SERIES_DAILY", "outputsize": "compact"},
            max_age_minutes=24 * 60,
        ),
        "launches": SourceConfig(
            provider="thespacedevs",
            path="/launch/upcoming/",
            namespace="space",
            key_style="static",
            query_fields=["limit", "mode"],
            defaults={"limit": 5, "mode": "detailed"},
            max_age_minutes=15,
        ),
        "iss_passes": SourceConfig(
            provider="n2yo",
            path="/satellite/visualpasses/25544/{lat}/{lon}/0/{days}/{min_elevation}",
            key_style="coordinates",
            key_fields=["days", "min_elevation"],
            defaults={"days": 5, "min_elevation": 10},
            max_age_minutes=15,
        ),
    }


class GatewayConfig(pydantic.BaseModel):
    """Configuration for the cache gateway."""

    database_path: str | None = pydantic.Field(
        "data/ambient.db",
        description="SQLite cache file, in-memory store when null",
    )
    max_workers: int = pydantic.Field(
        4,
        description="Threads available for upstream refreshes",
        gt=0,
    )
    sweep_interval_seconds: float = pydantic.Field(
        3600.0,
        description="Seconds between expired-entry sweeps",
        gt=0,
    )
    sweep_grace_minutes: float = pydantic.Field(
        24 * 60,
        description="How long expired entries are kept as a fallback",
        ge=0,
    )
    port: int = pydantic.Field(3002, description="HTTP server port", gt=0, lt=65536)
    log_level: str = pydantic.Field("INFO", description="Logging level")
    providers: dict[str, ProviderConfig] = pydantic.Field(
        default_factory=default_providers,
    )
    sources: dict[str, SourceConfig] = pydantic.Field(default_factory=default_sources)

    @pydantic.model_validator(mode="after")
    def _check_source_providers(self) -> "GatewayConfig":
        for name, source in self.sources.items():
            for fetch in (source, *source.fallbacks):
                if fetch.provider not in self.providers:
                    msg = (
                        f"Source {name!r} references unknown provider "
                        f"{fetch.provider!r}"
                    )
                    raise ValueError(msg)
        return self


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> GatewayConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return GatewayConfig(**data)
