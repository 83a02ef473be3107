"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from matatu_tracker.api import diagnostics, routes, tracking, ws
from matatu_tracker.api.errors import register_error_handlers
from matatu_tracker.config import settings
from matatu_tracker.core.aggregator import RouteAggregator
from matatu_tracker.core.broadcaster import Broadcaster
from matatu_tracker.core.directions_client import DirectionsClient
from matatu_tracker.core.geometry_resolver import GeometryResolver
from matatu_tracker.core.scheduler import create_scheduler, schedule_idle_sweep
from matatu_tracker.core.store import SqlStore
from matatu_tracker.core.tracking import TrackingEngine
from matatu_tracker.db.session import async_session, engine
from matatu_tracker.models.base import Base
from matatu_tracker.models import tables  # noqa: F401

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Initialize services
    store = SqlStore(async_session)
    directions = DirectionsClient()
    if not directions.configured:
        logger.warning("No directions API key set - routes will use stored or stage geometry")
    resolver = GeometryResolver(directions, store)
    aggregator = RouteAggregator(store)
    broadcaster = Broadcaster()
    await broadcaster.connect()

    scheduler = create_scheduler()
    scheduler.start()
    tracker = TrackingEngine(aggregator, resolver, scheduler, broadcaster)
    schedule_idle_sweep(scheduler, tracker, settings.idle_sweep_seconds)

    # Wire up API modules
    routes.aggregator = aggregator
    routes.resolver = resolver
    tracking.engine = tracker
    diagnostics.engine = tracker
    ws.broadcaster = broadcaster
    ws.engine = tracker

    logger.info(
        "Matatu Tracker started - position tick %.1fs, ETA tick %.1fs",
        settings.position_tick_seconds, settings.eta_tick_seconds,
    )

    yield

    # Shutdown
    await tracker.close()
    scheduler.shutdown(wait=False)
    await directions.close()
    await broadcaster.close()
    await engine.dispose()
    logger.info("Matatu Tracker shut down")


app = FastAPI(
    title="Matatu Route Tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(routes.router)
app.include_router(tracking.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
