"""Route REST API endpoints."""

from fastapi import APIRouter, HTTPException

from matatu_tracker.core.aggregator import stage_travel_times
from matatu_tracker.core.geometry_resolver import bounding_region, default_region
from matatu_tracker.schemas.route import (
    GeneratedGeometry,
    RouteGeometry,
    RouteList,
    RouteView,
    SkippedRoute,
    StageTravelInfo,
)

router = APIRouter(prefix="/api/routes", tags=["routes"])

# Will be set by main.py
aggregator = None
resolver = None


def _require_services() -> None:
    if aggregator is None or resolver is None:
        raise HTTPException(status_code=503, detail="Service not ready")


@router.get("", response_model=RouteList)
async def list_routes():
    """Get every route whose stored data is valid, and the ids rejected."""
    _require_services()
    views, skipped = await aggregator.resolve_listing()
    return RouteList(
        routes=sorted(views.values(), key=lambda v: v.name),
        skipped=[SkippedRoute(id=k, reason=v) for k, v in sorted(skipped.items())],
    )


@router.get("/{route_id}", response_model=RouteView)
async def get_route(route_id: str):
    """Get one route with its stages, vehicles and worst congestion."""
    _require_services()
    return await aggregator.resolve_route(route_id)


@router.get("/{route_id}/geometry", response_model=RouteGeometry)
async def get_route_geometry(route_id: str, require_points: bool = False):
    """Resolve the drawable path and the map region that frames it."""
    _require_services()
    view = await aggregator.resolve_route(route_id)
    path = await resolver.resolve(view, require_non_empty=require_points)
    return RouteGeometry(
        route_id=view.id,
        source=path.source,
        status_label=path.status_label,
        points=path.points,
        region=bounding_region(path.points) or default_region(),
        attempts=path.attempts,
    )


@router.get("/{route_id}/stage-times", response_model=list[StageTravelInfo])
async def get_stage_times(route_id: str):
    """Rough travel minutes between consecutive stages."""
    _require_services()
    view = await aggregator.resolve_route(route_id)
    return stage_travel_times(view)


@router.post("/{route_id}/geometry/generate", response_model=GeneratedGeometry)
async def generate_route_geometry(route_id: str):
    """Fetch a road path from the provider and store it as the route's polyline."""
    _require_services()
    view = await aggregator.resolve_route(route_id)
    stored = await resolver.generate_stored_geometry(view)
    return GeneratedGeometry(route_id=view.id, points_stored=stored)
