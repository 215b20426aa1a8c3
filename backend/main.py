"""
Peanut Frame Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.airstack import AirstackAdapter
from adapter.dune import DuneAdapter
from aggregator import LeaderboardBuilder, MetricsAggregator
from api import frame_router, router, set_dependencies
from core import DEFAULT_FID, FrameService
from monitoring import monitor, EventType
from services import (
    EVENTS_DATASET,
    LEADERBOARD_DATASET,
    IdentityCache,
    SnapshotCache,
)

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EVENTS_QUERY_ID = 4801893
LEADERBOARD_QUERY_ID = 4801919


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor FastAPI requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Skip monitoring for docs
        if request.url.path in ["/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            monitor.metrics.record_request(request.url.path, latency_ms, error=True)
            monitor.activity.add_event(EventType.ERROR, subject=request.url.path, error=str(e))
            raise

        latency_ms = (time.time() - start_time) * 1000
        monitor.metrics.record_request(
            request.url.path, latency_ms, error=response.status_code >= 500
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    logger.info("Starting Peanut frame backend...")

    dune_adapter = DuneAdapter()
    airstack_adapter = AirstackAdapter()

    if dune_adapter.is_configured:
        logger.info("✓ Dune Adapter configured")
    else:
        logger.warning("⚠ Dune Adapter not configured - set DUNE_API_KEY")

    if airstack_adapter.is_configured:
        logger.info("✓ Airstack Adapter configured")
    else:
        logger.warning("⚠ Airstack Adapter not configured - set AIRSTACK_API_KEY")

    refresh_seconds = int(os.environ.get("CACHE_REFRESH_SECONDS", "300"))
    snapshot_cache = SnapshotCache(
        data_source=dune_adapter,
        datasets={
            EVENTS_DATASET: int(os.environ.get("DUNE_EVENTS_QUERY_ID", EVENTS_QUERY_ID)),
            LEADERBOARD_DATASET: int(os.environ.get("DUNE_LEADERBOARD_QUERY_ID", LEADERBOARD_QUERY_ID)),
        },
        refresh_interval=timedelta(seconds=refresh_seconds),
        single_flight=_env_flag("SNAPSHOT_SINGLE_FLIGHT", True),
    )

    identity_ttl = float(os.environ.get("IDENTITY_CACHE_TTL_SECONDS", "0"))
    identity_cache = IdentityCache(
        directory=airstack_adapter,
        max_entries=int(os.environ.get("IDENTITY_CACHE_MAX_ENTRIES", "10000")),
        ttl_seconds=identity_ttl or None,
    )

    aggregator = MetricsAggregator(snapshot_cache, identity_cache)
    leaderboard_builder = LeaderboardBuilder(aggregator, directory=airstack_adapter)
    frame_service = FrameService(
        aggregator,
        leaderboard_builder,
        default_user_id=os.environ.get("DEFAULT_FID", DEFAULT_FID),
        public_url=os.environ.get("PUBLIC_URL", "http://localhost:8000"),
    )

    set_dependencies(frame_service, snapshot_cache, identity_cache)

    monitor.set_component_status(
        "dune_adapter",
        "healthy" if dune_adapter.is_configured else "warning",
        {"configured": dune_adapter.is_configured}
    )
    monitor.set_component_status(
        "airstack_adapter",
        "healthy" if airstack_adapter.is_configured else "warning",
        {"configured": airstack_adapter.is_configured}
    )
    monitor.set_component_status(
        "snapshot_cache", "healthy", {"refresh_seconds": refresh_seconds}
    )

    logger.info(f"✓ Snapshot cache initialized (refresh: {refresh_seconds}s)")
    logger.info("📊 Monitoring available at /api/v1/monitor/*")
    logger.info("Peanut frame backend ready!")

    yield  # Application runs here

    logger.info("Shutting down Peanut frame backend...")


# Create FastAPI app
app = FastAPI(
    title="Peanut Frame API",
    description="Farcaster frame showing peanut earnings, allowance and leaderboard",
    version="1.0.0",
    lifespan=lifespan,
)

# Request monitoring middleware
app.add_middleware(RequestMonitoringMiddleware)

# CORS middleware for frame clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)
app.include_router(frame_router)

static_dir = os.environ.get("STATIC_DIR", "public")
if os.path.isdir(static_dir):
    app.mount("/public", StaticFiles(directory=static_dir), name="public")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
