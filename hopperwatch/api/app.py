"""
hopperwatch — FastAPI Application
=================================
Wires settings, source connectors, the snapshot cache and the refresh
scheduler into one app. The scheduler is started (including its warm-up
run of every job) in the lifespan hook and stopped on shutdown.

Usage:
    hopperwatch-api                         # 0.0.0.0:5000 from .env / environment
    hopperwatch-api --port 8080 --reload    # dev mode
    curl http://localhost:5000/api/v1/hardware-status
    curl http://localhost:5000/docs         # Swagger UI
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hopperwatch import __version__
from hopperwatch.api.snapshot_routes import router as snapshot_router
from hopperwatch.core.env_config import Settings, configure_logging, get_settings
from hopperwatch.data.cache_store import CacheStore
from hopperwatch.data.metrics_connector import MetricsConnector
from hopperwatch.data.warehouse_connector import WarehouseConnector
from hopperwatch.scheduling.jobs import RefreshJobs
from hopperwatch.scheduling.scheduler import Scheduler

log = logging.getLogger("hopperwatch.app")


def build_scheduler(settings: Settings, cache: CacheStore):
    """Scheduler with the four refresh jobs registered, plus the connectors to close later."""
    metrics   = MetricsConnector.from_settings(settings)
    warehouse = WarehouseConnector.from_settings(settings)
    scheduler = Scheduler()
    RefreshJobs(settings, metrics, warehouse, cache).register(scheduler)
    return scheduler, (metrics, warehouse)


def create_app(
    settings:        Optional[Settings]  = None,
    cache:           Optional[CacheStore] = None,
    scheduler:       Optional[Scheduler]  = None,
    start_scheduler: bool                 = True,
) -> FastAPI:
    settings = settings or get_settings()
    cache    = cache or CacheStore(settings.cache_db)
    connectors = ()
    if scheduler is None:
        scheduler, connectors = build_scheduler(settings, cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            log.info("hopperwatch %s starting: warming cache", __version__)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, scheduler.start)
        yield
        if start_scheduler:
            scheduler.stop()
        for c in connectors:
            c.close()
        log.info("hopperwatch shut down")

    app = FastAPI(
        title       = "hopperwatch",
        description = "Cached cluster telemetry and usage snapshots for the HPC dashboard.",
        version     = __version__,
        lifespan    = lifespan,
    )
    app.state.settings  = settings
    app.state.cache     = cache
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins  = [o.strip() for o in settings.cors_origin.split(",") if o.strip()],
        allow_methods  = ["GET", "POST"],
        allow_headers  = ["*"],
    )
    app.include_router(snapshot_router)
    return app


def main():
    import argparse
    settings = get_settings()
    parser = argparse.ArgumentParser(description="hopperwatch snapshot API server")
    parser.add_argument("--host",   default=settings.api_host)
    parser.add_argument("--port",   type=int, default=settings.api_port)
    parser.add_argument("--reload", action="store_true",
                        help="Auto-reload on code changes (dev mode)")
    args = parser.parse_args()

    configure_logging(settings.log_level)
    log.info("Listening on http://%s:%d (docs at /docs)", args.host, args.port)
    uvicorn.run(
        "hopperwatch.api.app:create_app",
        factory   = True,
        host      = args.host,
        port      = args.port,
        reload    = args.reload,
        log_level = settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
