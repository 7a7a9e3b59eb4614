"""HTTP server and wiring for the cache gateway."""

import contextlib
import dataclasses
import os
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx
import prometheus_client
import prometheus_client.core
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import keys, upstream
from .collector import CacheCollector
from .config import (
    CONFIG_ENV_VAR,
    FetchConfig,
    GatewayConfig,
    ProviderConfig,
    configure_logging,
    load_config,
)
from .housekeeping import PeriodicSweeper
from .orchestrator import DataSource, Fetcher, FetchOrchestrator, ProviderFetcher
from .store import SECONDS_PER_MINUTE, CacheStore, MemoryCacheStore, SqliteCacheStore
from .throttle import Throttle
from .transforms import TRANSFORMS

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class Gateway:
    """Everything needed to serve cached provider data."""

    config: GatewayConfig
    store: CacheStore
    throttle: Throttle
    orchestrator: FetchOrchestrator
    sweeper: PeriodicSweeper
    adapters: dict[str, upstream.HttpProviderAdapter]

    def fetch(self, source: str, params: Mapping[str, Any] | None = None, **kwargs):
        """Fetch through the orchestrator by source name."""
        return self.orchestrator.fetch(source, params, **kwargs)

    def close(self) -> None:
        self.sweeper.stop()
        self.orchestrator.close(wait=False)
        for adapter in self.adapters.values():
            adapter.close()
        if isinstance(self.store, SqliteCacheStore):
            self.store.close()


def build_adapter(
    provider_id: str,
    config: ProviderConfig,
    environ: Mapping[str, str],
    transport: httpx.BaseTransport | None = None,
) -> upstream.HttpProviderAdapter:
    """Create the HTTP adapter for a provider, resolving credentials from env."""
    query = dict(config.query)
    if config.api_key_env:
        api_key = environ.get(config.api_key_env)
        if api_key:
            query[config.api_key_param] = api_key
        else:
            logger.warning(
                "API key not configured",
                provider=provider_id,
                env_var=config.api_key_env,
            )

    auth = None
    if config.username_env and config.password_env:
        username = environ.get(config.username_env)
        password = environ.get(config.password_env)
        if username and password:
            auth = (username, password)
        else:
            logger.warning("Credentials not configured", provider=provider_id)

    return upstream.HttpProviderAdapter(
        provider_id=provider_id,
        base_url=config.base_url,
        headers=config.headers,
        query=query,
        timeout=config.timeout,
        auth=auth,
        retry_after_header=config.retry_after_header,
        rate_limit_phrases=config.rate_limit_phrases,
        error_keys=config.error_keys,
        transport=transport,
    )


def build_fetcher(
    adapters: Mapping[str, upstream.HttpProviderAdapter],
    config: FetchConfig,
) -> Fetcher:
    """Bind a configured endpoint to its provider's adapter."""
    return adapters[config.provider].fetcher(
        config.path,
        query_fields=config.query_fields,
        defaults=config.defaults,
        transform=TRANSFORMS[config.transform] if config.transform else None,
        follow=config.follow,
    )


def create_gateway(
    config: GatewayConfig,
    environ: Mapping[str, str] | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Gateway:
    """Wire store, throttle, adapters and data sources from validated config.

    Args:
        config: Gateway configuration.
        environ: Source of API keys and credentials (default: os.environ).
        transport: Optional httpx transport shared by all adapters.

    Returns:
        A gateway whose sweeper has not been started yet.
    """
    environ = os.environ if environ is None else environ

    if config.database_path is None:
        store: CacheStore = MemoryCacheStore()
    else:
        store = SqliteCacheStore(config.database_path)

    throttle = Throttle()
    adapters = {}
    for provider_id, provider_config in config.providers.items():
        throttle.register(provider_id, provider_config.throttle_policy())
        adapters[provider_id] = build_adapter(
            provider_id,
            provider_config,
            environ,
            transport,
        )

    orchestrator = FetchOrchestrator(store, throttle, max_workers=config.max_workers)
    for name, source_config in config.sources.items():
        orchestrator.register(
            DataSource(
                name=name,
                provider_id=source_config.provider,
                max_age_minutes=source_config.max_age_minutes,
                fetcher=build_fetcher(adapters, source_config),
                key_builder=keys.key_builder(
                    source_config.key_style,
                    source_config.namespace or name,
                    name,
                    key_fields=source_config.key_fields,
                    defaults=source_config.defaults,
                ),
                fallbacks=tuple(
                    ProviderFetcher(
                        fallback.provider,
                        build_fetcher(adapters, fallback),
                    )
                    for fallback in source_config.fallbacks
                ),
            ),
        )

    sweeper = PeriodicSweeper(
        store,
        interval_seconds=config.sweep_interval_seconds,
        grace_seconds=config.sweep_grace_minutes * SECONDS_PER_MINUTE,
    )
    logger.info(
        "Created gateway",
        database_path=config.database_path,
        providers=len(adapters),
        sources=len(config.sources),
    )
    return Gateway(
        config=config,
        store=store,
        throttle=throttle,
        orchestrator=orchestrator,
        sweeper=sweeper,
        adapters=adapters,
    )


def create_starlette_app(gateway: Gateway) -> starlette.applications.Starlette:
    """Create a Starlette application exposing metrics and throttle status.

    The sweeper runs for the lifetime of the application and the gateway is
    closed on shutdown.
    """
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(CacheCollector(gateway.orchestrator, gateway.throttle))

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve cache metrics in Prometheus exposition format."""
        metrics_output = prometheus_client.generate_latest(registry)
        logger.debug(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )
        return starlette.responses.PlainTextResponse(
            content=metrics_output,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    def status_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Report throttle state per provider and request counters per source."""
        providers = {
            provider_id: dataclasses.asdict(gateway.throttle.snapshot(provider_id))
            for provider_id in gateway.throttle.provider_ids()
        }
        return starlette.responses.JSONResponse(
            {
                "providers": providers,
                "sources": gateway.orchestrator.stats(),
            },
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette) -> AsyncIterator[None]:
        gateway.sweeper.start()
        try:
            yield
        finally:
            gateway.close()

    routes = [
        starlette.routing.Route("/metrics", metrics_endpoint, methods=["GET"]),
        starlette.routing.Route("/status", status_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the gateway ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_starlette_app(create_gateway(config))
