"""
FastAPI application exposing control plane diagnostics.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crawlplane import __version__
from crawlplane.container import DependencyContainer
from crawlplane.stats.hourly import HourlyStatsType

logger = structlog.get_logger(__name__)


def create_app(container: Optional[DependencyContainer] = None) -> FastAPI:
    """Build the diagnostics app around ``container`` (a default one if omitted)."""
    container = container or DependencyContainer()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting crawlplane diagnostics API")
        app.state.start_time = time.time()
        await container.initialize()
        yield
        logger.info("Shutting down crawlplane diagnostics API")
        await container.shutdown()

    app = FastAPI(title="crawlplane diagnostics", version=__version__, lifespan=lifespan)
    app.state.container = container

    @app.get("/metrics")
    async def get_prometheus_metrics() -> Any:
        """Endpoint for Prometheus to scrape."""
        return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        rate_health = (await container.get_rate_controller()).get_health_status()
        pool = (await container.get_accounts()).get_pool_stats()
        system = (await container.get_metrics()).update_system_metrics()
        return {
            "status": "healthy" if rate_health["is_healthy"] else "degraded",
            "timestamp": time.time(),
            "version": __version__,
            "rate": rate_health,
            "accounts": pool,
            "system": system,
            "container": container.get_health_status(),
        }

    @app.get("/stats/rate")
    async def get_rate_stats() -> Dict[str, Any]:
        controller = await container.get_rate_controller()
        hosts = await container.get_host_rates()
        return {"global": controller.get_current_stats().to_dict(), "hosts": hosts.get_all_stats()}

    @app.get("/stats/rate/detailed")
    async def get_detailed_rate_stats() -> Dict[str, Any]:
        return (await container.get_rate_controller()).get_detailed_stats()

    @app.get("/stats/consumer")
    async def get_consumer_stats() -> Dict[str, Any]:
        consumer = await container.get_consumer()
        return (await consumer.get_stats()).to_dict()

    @app.get("/stats/hourly/{stat_type}")
    async def get_hourly_stats(
        stat_type: HourlyStatsType, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(hours=24)
        hourly = await container.get_hourly_stats()
        try:
            response = await hourly.get_hourly_stats(stat_type, start, end)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return response.to_dict()

    @app.get("/robots/cache")
    async def get_robots_cache() -> Dict[str, Any]:
        robots = await container.get_robots()
        return {"entries": robots.get_cache_info(), "domains": robots.get_domain_stats()}

    @app.get("/accounts")
    async def get_accounts() -> Dict[str, Any]:
        pool = await container.get_accounts()
        return {
            "accounts": [account.to_dict() for account in pool.list_accounts()],
            "stats": pool.get_pool_stats(),
        }

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next: Callable) -> Any:
        """Add timing headers and log all requests."""
        start_time = time.time()
        request_id = uuid4()
        request.state.request_id = request_id

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-ID"] = str(request_id)
        logger.debug(
            "API request",
            path=request.url.path,
            method=request.method,
            status_code=response.status_code,
            response_time_ms=round(process_time * 1000, 2),
            request_id=str(request_id),
        )
        return response

    return app


def run_web_server(host: str = "127.0.0.1", port: int = 8000, container: Optional[DependencyContainer] = None) -> None:
    """Function to run the FastAPI server."""
    import uvicorn

    logger.info("Starting crawlplane diagnostics API", url=f"http://{host}:{port}")
    uvicorn.run(create_app(container), host=host, port=port)
