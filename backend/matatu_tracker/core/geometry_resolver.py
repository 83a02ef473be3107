"""Ordered fallback chain that turns a RouteView into one drawable path.

Priority: provider (route endpoints) > provider (stage endpoints) >
stored polyline > straight stage-to-stage chain > nothing. A step runs
only when every earlier step produced zero points.
"""

import logging

from shapely.geometry import MultiPoint

from matatu_tracker.config import settings
from matatu_tracker.core.directions_client import DirectionsClient
from matatu_tracker.core.exceptions import (
    GeometryUnavailable,
    MalformedEncoding,
    ProviderUnavailable,
)
from matatu_tracker.schemas.geo import (
    BoundingRegion,
    Coordinate,
    PathSource,
    ResolvedPath,
    dedupe_consecutive,
)
from matatu_tracker.schemas.route import RouteView

logger = logging.getLogger(__name__)


def _route_endpoints(route: RouteView) -> tuple[str, str]:
    """Origin/destination params: coordinates when stored, else place text."""
    origin = route.start.as_param() if route.start else route.start_location.strip()
    destination = route.end.as_param() if route.end else route.end_location.strip()
    return origin, destination


def bounding_region(
    points: list[Coordinate],
    padding: float | None = None,
    min_span: float | None = None,
) -> BoundingRegion | None:
    """Region framing all points, padded; None for an empty path."""
    if not points:
        return None
    padding = settings.region_padding if padding is None else padding
    min_span = settings.min_region_span if min_span is None else min_span

    # Shapely uses (x, y) = (lng, lat)
    min_lng, min_lat, max_lng, max_lat = MultiPoint(
        [(p.longitude, p.latitude) for p in points]
    ).bounds
    return BoundingRegion(
        center=Coordinate(
            latitude=(min_lat + max_lat) / 2,
            longitude=(min_lng + max_lng) / 2,
        ),
        span_lat=max((max_lat - min_lat) * padding, min_span),
        span_lng=max((max_lng - min_lng) * padding, min_span),
    )


def default_region() -> BoundingRegion:
    return BoundingRegion(
        center=Coordinate(
            latitude=settings.default_center_lat,
            longitude=settings.default_center_lng,
        ),
        span_lat=settings.default_region_span,
        span_lng=settings.default_region_span,
    )


class GeometryResolver:
    """Resolves route geometry, degrading through the fallback chain."""

    def __init__(self, directions: DirectionsClient, store=None) -> None:
        self.directions = directions
        self.store = store

    async def _query_provider(
        self, step: str, origin: str, destination: str, attempts: list[str],
    ) -> list[Coordinate]:
        try:
            points = await self.directions.fetch_path(origin, destination)
        except (ProviderUnavailable, MalformedEncoding) as e:
            logger.info("%s failed: %s", step, e)
            attempts.append(f"{step}: {e}")
            return []
        if not points:
            attempts.append(f"{step}: no points")
        return points

    async def resolve(self, route: RouteView, require_non_empty: bool = False) -> ResolvedPath:
        attempts: list[str] = []

        if self.directions.configured:
            origin, destination = _route_endpoints(route)
            if origin and destination:
                points = await self._query_provider(
                    "provider:route-endpoints", origin, destination, attempts,
                )
                if points:
                    return self._resolved(route, points, PathSource.PROVIDER, attempts)
            else:
                attempts.append("provider:route-endpoints: route has no start/end")

            if len(route.stages) >= 2:
                points = await self._query_provider(
                    "provider:stage-endpoints",
                    route.stages[0].location.as_param(),
                    route.stages[-1].location.as_param(),
                    attempts,
                )
                if points:
                    return self._resolved(route, points, PathSource.PROVIDER, attempts)
            else:
                attempts.append("provider:stage-endpoints: fewer than two stages")
        else:
            attempts.append("provider: not configured")

        if route.coordinates:
            return self._resolved(route, route.coordinates, PathSource.STORED_GEOMETRY, attempts)
        attempts.append("stored-geometry: no stored points")

        if len(route.stages) >= 2:
            chain = [s.location for s in route.stages]
            return self._resolved(route, chain, PathSource.STAGE_CHAIN, attempts)
        attempts.append("stage-chain: fewer than two stages")

        logger.info("Route %s: no geometry source available (%s)", route.id, "; ".join(attempts))
        if require_non_empty:
            raise GeometryUnavailable(route.id, attempts)
        return ResolvedPath(points=[], source=PathSource.NONE, attempts=attempts)

    @staticmethod
    def _resolved(
        route: RouteView,
        points: list[Coordinate],
        source: PathSource,
        attempts: list[str],
    ) -> ResolvedPath:
        path = ResolvedPath(points=dedupe_consecutive(points), source=source, attempts=attempts)
        logger.debug("Route %s: using %s geometry (%d pts)", route.id, source.value, len(path.points))
        return path

    async def generate_stored_geometry(self, route: RouteView) -> int:
        """Replace the route's stored polyline with the provider's path.

        Returns the number of stored points.
        """
        if self.store is None:
            raise RuntimeError("GeometryResolver has no store to write to")
        origin, destination = _route_endpoints(route)
        if not (origin and destination):
            raise ProviderUnavailable(f"Route {route.id} has no start/end to route between")
        points = await self.directions.fetch_path(origin, destination)
        if not points:
            raise ProviderUnavailable(f"Provider returned no points for route {route.id}")
        return await self.store.replace_route_coordinates(route.id, points)
