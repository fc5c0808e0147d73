"""FastAPI application entry point for propex."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from propex.accounting.recorder import JsonlUsageRecorder
from propex.ai_engine.engine import AIEngine
from propex.api.routes import router
from propex.config.settings import PropexConfig
from propex.fetch.browser_pool import BrowserPool
from propex.fetch.http import HttpFetcher
from propex.pipeline.job import EngineServices
from propex.pipeline.store import ResultStore
from propex.rate_limit import TokenBucket
from propex.sources.search import ValueSerpSearchProvider

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def _resolve_cors_origins() -> list[str]:
    origins_raw = os.getenv("PROPEX_ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in origins_raw.split(",") if origin.strip()]


async def build_services(config: PropexConfig) -> EngineServices:
    """Wire the production components from ``config``."""
    http = HttpFetcher(config.fetch)
    engine = AIEngine(config.vertex, timeout_s=config.timeouts.llm_timeout_s)
    if not await engine.initialize():
        logger.warning("Vertex AI unavailable; extraction requests will fail")

    search = None
    if config.search_api_key:
        limits = config.rate_limits
        search = ValueSerpSearchProvider(
            config.search_api_key,
            TokenBucket(limits.search_rate, limits.search_burst),
            client=http.client,
        )

    return EngineServices(
        config=config,
        http=http,
        llm=engine,
        renderer=BrowserPool(config.browser),
        search=search,
        recorder=JsonlUsageRecorder(config.storage.usage_ledger),
        store=ResultStore(config.storage.data_dir),
    )


def create_app(
    config: PropexConfig | None = None, services: EngineServices | None = None
) -> FastAPI:
    """Factory function for creating the FastAPI application.

    Pass ``services`` to run against pre-built components; otherwise they are
    built from ``config`` at startup and torn down at shutdown.
    """
    config = config or (services.config if services else PropexConfig())
    logging.basicConfig(level=config.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        app.state.services = services or await build_services(config)
        try:
            yield
        finally:
            if owned:
                renderer = app.state.services.renderer
                if isinstance(renderer, BrowserPool):
                    await renderer.stop()
                await app.state.services.http.aclose()

    app = FastAPI(
        title="propex",
        description="Product property extraction engine",
        version=VERSION,
        lifespan=lifespan,
    )

    origins = _resolve_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "service": "propex", "version": VERSION}

    return app


app = create_app()
