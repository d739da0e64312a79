"""FastAPI application wiring for a served site."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from pagesmith import __version__
from pagesmith.apps.site.routers import api, metrics, pages
from pagesmith.apps.site.site import Site
from pagesmith.core.error_handler import GracefulShutdown, setup_global_exception_handler
from pagesmith.core.logging import configure_logging
from pagesmith.core.settings import Settings, get_settings

request_logger = logging.getLogger("pagesmith.requests")
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the app for ``settings``; ``client`` replaces the upstream HTTP client (tests)."""

    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_global_exception_handler()
        logger.info("Starting pagesmith for %s (%s)", settings.site_path, settings.environment)

        site = await Site.create(settings, client=client)
        app.state.site = site
        closers = GracefulShutdown(timeout=15.0)
        closers.add_closer("Site", site.close)

        logger.info("Application started with %d page routes", len(site.routes))
        try:
            yield
        finally:
            logger.info("Stopping pagesmith")
            await closers.shutdown()

    app = FastAPI(
        title="pagesmith",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings

    app.include_router(api.router, prefix=settings.api_route)
    app.include_router(metrics.router)
    # Catch-all, must stay last.
    app.include_router(pages.router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            level = logging.WARNING if status >= 500 else logging.INFO
            request_logger.log(
                level,
                "%s %s %d %.1fms",
                request.method,
                request.url.path,
                status,
                elapsed_ms,
                extra={"route": request.url.path},
            )

    return app


__all__ = ["create_app"]
