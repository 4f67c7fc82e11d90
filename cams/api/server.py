"""FastAPI server for the connection test scheduler."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cams import __version__
from cams.api.health_routes import broadcast_result, health_router
from cams.api.schedule_routes import schedule_router
from cams.applications.registry import ApplicationRegistry
from cams.config import settings
from cams.health.scheduler import ConnectionTestScheduler
from cams.health.store import ResultStore
from cams.schedules.store import ScheduleStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize shared resources on startup."""
    # Application registry
    registry = ApplicationRegistry(settings.connections_file)
    try:
        registry.load()
        logger.info("Application registry loaded: %d applications", len(registry.applications))
    except Exception:
        logger.warning("Failed to load %s, no connections to test", settings.connections_file)
    app.state.registry = registry

    # Storage
    schedule_store = ScheduleStore(settings.db_path)
    result_store = ResultStore(schedule_store, history_limit=settings.history_limit)
    app.state.schedule_store = schedule_store
    app.state.result_store = result_store

    # Scheduler
    scheduler = ConnectionTestScheduler(
        registry,
        schedule_store,
        result_store,
        tick_seconds=settings.scheduler_tick_seconds,
        max_concurrency=settings.scheduler_max_concurrency,
        probe_timeout_s=settings.probe_timeout_seconds,
        on_result=broadcast_result,
    )
    app.state.scheduler = scheduler

    if settings.scheduler_enabled:
        try:
            await scheduler.start()
        except Exception:
            logger.exception("Connection test scheduler failed to start")
    else:
        logger.info("Scheduler disabled, runs only via run-now")

    yield

    # Shutdown
    await scheduler.stop()
    result_store.close()
    schedule_store.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="CAMS - Connection Test Scheduler",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api")
    app.include_router(schedule_router, prefix="/api")

    @app.get("/health")
    def liveness() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
