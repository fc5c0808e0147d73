"""Shared fixtures."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from fakes import site_handler
from propex.accounting.recorder import InMemoryUsageRecorder
from propex.config.settings import (
    FetchConfig,
    PropexConfig,
    RateLimitConfig,
    RetryConfig,
    ScoringConfig,
    StorageConfig,
)
from propex.fetch.http import HttpFetcher
from propex.pipeline.job import EngineServices
from propex.pipeline.store import ResultStore


@pytest.fixture
def make_http() -> Callable[[dict[str, Any]], HttpFetcher]:
    """Build an ``HttpFetcher`` over a fake site map (see ``fakes.site_handler``)."""

    def _make(routes: dict[str, Any]) -> HttpFetcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(site_handler(routes)))
        return HttpFetcher(FetchConfig(), client=client)

    return _make


@pytest.fixture
def config(tmp_path) -> PropexConfig:
    """Fast configuration: no real waiting on rate limits or backoff."""
    return PropexConfig(
        retry=RetryConfig(max_retries=2, backoff_base_ms=0, backoff_max_ms=0, jitter=False),
        rate_limits=RateLimitConfig(
            search_rate=1000.0,
            search_burst=100,
            llm_rate=1000.0,
            llm_burst=100,
            domain_rate=1000.0,
            domain_burst=100,
        ),
        scoring=ScoringConfig(
            manufacturer_domains=("aduro.de",),
            excluded_domains=("ebay.de", "amazon.de"),
            max_results=10,
        ),
        storage=StorageConfig(data_dir=tmp_path / "data"),
        bulk_parallelism=2,
        log_level="DEBUG",
    )


@pytest.fixture
def make_services(config, make_http) -> Callable[..., EngineServices]:
    """Wire ``EngineServices`` around a fake site map and a scripted LLM."""

    def _make(
        routes: dict[str, Any],
        llm: Any,
        renderer: Any = None,
        search: Any = None,
        store: ResultStore | None = None,
    ) -> EngineServices:
        return EngineServices(
            config=config,
            http=make_http(routes),
            llm=llm,
            renderer=renderer,
            search=search,
            recorder=InMemoryUsageRecorder(),
            store=store if store is not None else ResultStore(config.storage.data_dir),
        )

    return _make
