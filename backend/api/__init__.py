"""
FastAPI routes for the Peanut frame backend.

Two routers:
- ``frame_router``: the frame pages (HTML meta tags) and their SVG cards
- ``router``: JSON API under /api/v1 (metrics, leaderboard, cache, monitoring)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field

from aggregator import LeaderboardEntry, UserMetrics
from core import FrameService, StatsScreen, canonical_user_id, is_valid_user_id
from monitoring import monitor, EventType
from render import (
    FrameButton,
    render_frame_html,
    render_leaderboard_card,
    render_stats_card,
)
from services import IdentityCache, SnapshotCache

logger = logging.getLogger(__name__)

# Router for JSON endpoints
router = APIRouter(prefix="/api/v1", tags=["Peanut Frame"])

# Router for frame pages and images
frame_router = APIRouter(tags=["Frames"])

FRAME_TITLE = "Peanut Casts Frame"
RESET_BUTTON_INDEX = 4


# ============================================================================
# Request/Response Models
# ============================================================================

class UntrustedData(BaseModel):
    """Client-reported part of a frame action (signature is not verified)."""
    fid: Optional[int] = Field(default=None, description="FID of the user who clicked")
    inputText: Optional[str] = Field(default=None, description="Text input contents")
    buttonIndex: Optional[int] = Field(default=None, description="1-based index of the clicked button")


class FrameActionRequest(BaseModel):
    """Body POSTed by a Farcaster client when a frame button is clicked."""
    untrustedData: Optional[UntrustedData] = None
    trustedData: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    datasets: Dict[str, bool] = Field(description="Dataset key -> populated at least once")
    identity_cache_entries: int


# ============================================================================
# Dependency Injection - these get set by the main app
# ============================================================================

_frame_service: Optional[FrameService] = None
_snapshot_cache: Optional[SnapshotCache] = None
_identity_cache: Optional[IdentityCache] = None


def set_dependencies(
    frame_service: FrameService,
    snapshot_cache: SnapshotCache,
    identity_cache: IdentityCache
):
    """Set the service dependencies (called from main app)."""
    global _frame_service, _snapshot_cache, _identity_cache
    _frame_service = frame_service
    _snapshot_cache = snapshot_cache
    _identity_cache = identity_cache


def get_frame_service() -> FrameService:
    if _frame_service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _frame_service


def get_snapshot_cache() -> SnapshotCache:
    if _snapshot_cache is None:
        raise HTTPException(status_code=503, detail="Snapshot cache not initialized")
    return _snapshot_cache


def get_identity_cache() -> IdentityCache:
    if _identity_cache is None:
        raise HTTPException(status_code=503, detail="Identity cache not initialized")
    return _identity_cache


def _require_fid(fid: str) -> str:
    if not is_valid_user_id(fid):
        raise HTTPException(status_code=400, detail=f"Invalid FID: {fid!r}")
    return canonical_user_id(fid)


# ============================================================================
# Frame pages
# ============================================================================

def _stats_frame(service: FrameService, user_id: str, responded: bool) -> HTMLResponse:
    buttons = [
        FrameButton("Check"),
        FrameButton("Leaderboard", target=service.frame_url("/leaderboard", fid=user_id)),
        FrameButton("📤 Share", action="link", target=service.frame_url("/share", fid=user_id)),
    ]
    if responded:
        buttons.append(FrameButton("Reset"))

    html = render_frame_html(
        title=FRAME_TITLE,
        image_url=service.frame_url("/image/stats", fid=user_id),
        post_url=service.frame_url("/"),
        buttons=buttons,
        input_placeholder="Enter Farcaster FID...",
    )
    return HTMLResponse(content=html)


def _leaderboard_frame(service: FrameService, user_id: str) -> HTMLResponse:
    html = render_frame_html(
        title=f"{FRAME_TITLE} - Leaderboard",
        image_url=service.frame_url("/image/leaderboard", fid=user_id),
        post_url=service.frame_url("/"),
        buttons=[FrameButton("Back")],
    )
    return HTMLResponse(content=html)


@frame_router.get("/", response_class=HTMLResponse)
async def stats_frame(
    fid: Optional[str] = Query(default=None, description="FID to show (share deep links carry it)"),
    service: FrameService = Depends(get_frame_service)
):
    """Initial stats frame."""
    user_id = service.resolve_user_id(explicit=fid)
    return _stats_frame(service, user_id, responded=False)


@frame_router.post("/", response_class=HTMLResponse)
async def stats_frame_action(
    action: Optional[FrameActionRequest] = Body(default=None),
    service: FrameService = Depends(get_frame_service)
):
    """
    Stats frame button handler.

    The typed FID wins over the clicking user's FID; Reset ignores the input.
    """
    data = (action.untrustedData if action else None) or UntrustedData()
    caller = str(data.fid) if data.fid is not None else None

    if data.buttonIndex == RESET_BUTTON_INDEX:
        user_id = service.resolve_user_id(caller=caller)
    else:
        user_id = service.resolve_user_id(explicit=data.inputText, caller=caller)

    return _stats_frame(service, user_id, responded=True)


@frame_router.api_route("/leaderboard", methods=["GET", "POST"], response_class=HTMLResponse)
async def leaderboard_frame(
    fid: Optional[str] = Query(default=None, description="FID whose own row is appended"),
    action: Optional[FrameActionRequest] = Body(default=None),
    service: FrameService = Depends(get_frame_service)
):
    """Leaderboard frame."""
    data = (action.untrustedData if action else None) or UntrustedData()
    caller = str(data.fid) if data.fid is not None else None
    user_id = service.resolve_user_id(explicit=fid, caller=caller)
    return _leaderboard_frame(service, user_id)


@frame_router.get("/share")
async def share_redirect(
    fid: Optional[str] = Query(default=None),
    service: FrameService = Depends(get_frame_service)
):
    """Share button target: redirects to the Warpcast compose link for the FID."""
    metrics = await service.aggregator.compute_metrics(service.resolve_user_id(explicit=fid))
    return RedirectResponse(url=service.build_share_url(metrics), status_code=302)


@frame_router.get("/image/stats")
async def stats_image(
    fid: Optional[str] = Query(default=None),
    service: FrameService = Depends(get_frame_service)
):
    """SVG stats card."""
    screen = await service.stats_screen(service.resolve_user_id(explicit=fid))
    return Response(
        content=render_stats_card(screen),
        media_type="image/svg+xml",
        headers={"Cache-Control": "max-age=0"}
    )


@frame_router.get("/image/leaderboard")
async def leaderboard_image(
    fid: Optional[str] = Query(default=None),
    service: FrameService = Depends(get_frame_service)
):
    """SVG leaderboard card."""
    screen = await service.leaderboard_screen(service.resolve_user_id(explicit=fid))
    return Response(
        content=render_leaderboard_card(screen),
        media_type="image/svg+xml",
        headers={"Cache-Control": "max-age=0"}
    )


# ============================================================================
# JSON API
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    cache: SnapshotCache = Depends(get_snapshot_cache),
    identities: IdentityCache = Depends(get_identity_cache)
):
    """Health check endpoint."""
    datasets = {key: cache.peek(key).populated for key in cache.datasets}
    return HealthResponse(
        status="healthy" if all(datasets.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        datasets=datasets,
        identity_cache_entries=len(identities)
    )


@router.get("/users/{fid}/metrics", response_model=UserMetrics)
async def get_user_metrics(
    fid: str,
    service: FrameService = Depends(get_frame_service)
):
    """Earnings, allowance, rank and all-time count for a FID."""
    return await service.aggregator.compute_metrics(_require_fid(fid))


@router.get("/users/{fid}/stats", response_model=StatsScreen)
async def get_user_stats(
    fid: str,
    service: FrameService = Depends(get_frame_service)
):
    """Stats card data, including the formatted tiles and share link."""
    return await service.stats_screen(_require_fid(fid))


@router.get("/users/{fid}/leaderboard", response_model=List[LeaderboardEntry])
async def get_user_leaderboard(
    fid: str,
    service: FrameService = Depends(get_frame_service)
):
    """
    Top entries followed by the requester's own entry.

    The last element is always the requester, even if already listed above.
    """
    screen = await service.leaderboard_screen(_require_fid(fid))
    return screen.entries


@router.get("/cache")
async def get_cache_stats(
    cache: SnapshotCache = Depends(get_snapshot_cache),
    identities: IdentityCache = Depends(get_identity_cache)
):
    """Snapshot and identity cache statistics."""
    return {
        "snapshots": cache.get_stats(),
        "identities": identities.get_stats(),
    }


@router.post("/cache/{dataset}/invalidate")
async def invalidate_dataset(
    dataset: str,
    cache: SnapshotCache = Depends(get_snapshot_cache)
):
    """Force the next request to refresh a dataset from Dune."""
    try:
        cache.invalidate(dataset)
    except KeyError:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown dataset: {dataset}. Valid options: {list(cache.datasets)}"
        )
    return {"dataset": dataset, "invalidated": True}


# ----------------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------------

@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_monitor_dashboard():
    """Full monitoring dashboard data."""
    return monitor.get_dashboard_data()


@router.get("/monitor/health", tags=["Monitoring"])
async def get_monitor_health():
    """Component health status."""
    return monitor.get_health_status()


@router.get("/monitor/metrics", tags=["Monitoring"])
async def get_monitor_metrics():
    """Request, cache and upstream API metrics."""
    return monitor.metrics.get_metrics()


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_monitor_activity(
    limit: int = Query(default=50, ge=1, le=500, description="Number of events to return"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type")
):
    """Recent system events, most recent first."""
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event type: {event_type}. Valid options: {[e.value for e in EventType]}"
            )

    return {
        "events": monitor.activity.get_recent(limit=limit, event_type=filter_type),
        "event_counts_5m": monitor.activity.get_event_counts(since_minutes=5),
    }


__all__ = [
    "router",
    "frame_router",
    "set_dependencies",
    "FrameActionRequest",
    "UntrustedData",
]
