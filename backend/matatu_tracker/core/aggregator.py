"""Merge routes, stages and vehicles from the store into RouteViews."""

import asyncio
import logging

from matatu_tracker.core import congestion
from matatu_tracker.core.eta_calculator import stage_travel_minutes
from matatu_tracker.core.exceptions import InvalidCoordinate, NotFound, StoreFetchError
from matatu_tracker.core.store import RouteRecord, StageRecord, VehicleRecord
from matatu_tracker.schemas.geo import Coordinate
from matatu_tracker.schemas.route import RouteView, StageTravelInfo, StageView, VehicleView

logger = logging.getLogger(__name__)

COLLECTIONS = ("routes", "stages", "vehicles")


def group_by_route(records) -> dict[str, list]:
    """Group records by their route_id foreign key."""
    groups: dict[str, list] = {}
    for rec in records:
        groups.setdefault(str(rec.route_id), []).append(rec)
    return groups


def _optional_coordinate(lat, lng) -> Coordinate | None:
    if lat is None and lng is None:
        return None
    return Coordinate.from_raw(lat, lng)


def build_route_view(
    route: RouteRecord,
    stages: list[StageRecord],
    vehicles: list[VehicleRecord],
) -> RouteView:
    """Assemble one RouteView, validating every coordinate it carries.

    Raises InvalidCoordinate on out-of-range or missing stage/polyline values.
    Vehicles with a bad location are left out and listed in
    ``rejected_vehicles``.
    """
    ordered = sorted(route.route_coordinates, key=lambda c: c["point_order"])
    coordinates = [Coordinate.from_raw(c["latitude"], c["longitude"]) for c in ordered]

    stage_views = [
        StageView(
            id=str(s.id),
            name=s.name,
            location=Coordinate.from_raw(s.latitude, s.longitude),
            congestion=s.congestion,
        )
        for s in stages
    ]
    vehicle_views = []
    rejected = []
    for v in vehicles:
        try:
            location = _optional_coordinate(v.latitude, v.longitude)
        except InvalidCoordinate as e:
            logger.warning("Route %s: vehicle %s skipped: %s", route.id, v.id, e)
            rejected.append(str(v.id))
            continue
        vehicle_views.append(VehicleView(
            id=str(v.id),
            plate_number=v.plate_number,
            location=location,
            capacity=v.capacity,
            available=v.available,
        ))

    worst = congestion.worst(s.congestion for s in stages)
    return RouteView(
        id=str(route.id),
        name=route.name,
        start_location=route.start_location,
        end_location=route.end_location,
        start=_optional_coordinate(route.start_lat, route.start_lng),
        end=_optional_coordinate(route.end_lat, route.end_lng),
        fare_amount=route.fare_amount,
        estimated_time=route.estimated_time,
        description=route.description,
        distance=route.distance,
        congestion=worst,
        congestion_level=congestion.display_level(worst),
        coordinates=coordinates,
        stages=stage_views,
        vehicles=vehicle_views,
        rejected_vehicles=rejected,
    )


class RouteAggregator:
    """Produces RouteViews from three independently fetched collections."""

    def __init__(self, store) -> None:
        self.store = store

    async def _fetch_all(
        self,
    ) -> tuple[list[RouteRecord], list[StageRecord], list[VehicleRecord]]:
        results = await asyncio.gather(
            self.store.fetch_routes(),
            self.store.fetch_stages(),
            self.store.fetch_vehicles(),
            return_exceptions=True,
        )
        failures: dict[str, BaseException] = {}
        for name, result in zip(COLLECTIONS, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("Failed to fetch %s from store: %s", name, result)
                failures[name] = result
        if failures:
            raise StoreFetchError(failures)

        routes, stages, vehicles = results
        logger.debug(
            "Fetched %d routes, %d stages, %d vehicles",
            len(routes), len(stages), len(vehicles),
        )
        return routes, stages, vehicles

    async def resolve_route(self, route_id: str) -> RouteView:
        """RouteView for ``route_id``; raises NotFound for unknown ids."""
        routes, stages, vehicles = await self._fetch_all()
        route = next((r for r in routes if str(r.id) == str(route_id)), None)
        if route is None:
            raise NotFound("route", str(route_id))

        stages_by_route = group_by_route(stages)
        vehicles_by_route = group_by_route(vehicles)
        return build_route_view(
            route,
            stages_by_route.get(str(route.id), []),
            vehicles_by_route.get(str(route.id), []),
        )

    async def resolve_listing(self) -> tuple[dict[str, RouteView], dict[str, str]]:
        """RouteViews keyed by route id, plus the ids that were rejected.

        A route whose stages or stored polyline fail coordinate validation
        is left out of the views and reported with the reason.
        """
        routes, stages, vehicles = await self._fetch_all()
        stages_by_route = group_by_route(stages)
        vehicles_by_route = group_by_route(vehicles)

        views: dict[str, RouteView] = {}
        skipped: dict[str, str] = {}
        for route in routes:
            key = str(route.id)
            try:
                views[key] = build_route_view(
                    route,
                    stages_by_route.get(key, []),
                    vehicles_by_route.get(key, []),
                )
            except InvalidCoordinate as e:
                logger.warning("Route %s skipped: %s", key, e)
                skipped[key] = str(e)
        return views, skipped

    async def resolve_all(self) -> dict[str, RouteView]:
        """RouteViews keyed by route id; invalid routes are left out."""
        views, _ = await self.resolve_listing()
        return views

    async def locate_vehicle(self, vehicle_id: str) -> tuple[RouteView, VehicleView]:
        """The vehicle's route view and its own view; NotFound if either is missing."""
        routes, stages, vehicles = await self._fetch_all()
        record = next((v for v in vehicles if str(v.id) == str(vehicle_id)), None)
        if record is None:
            raise NotFound("vehicle", str(vehicle_id))

        route_key = str(record.route_id)
        route = next((r for r in routes if str(r.id) == route_key), None)
        if route is None:
            raise NotFound("route", route_key)

        # Other vehicles with bad fixes are skipped, but not the one being located
        _optional_coordinate(record.latitude, record.longitude)

        view = build_route_view(
            route,
            group_by_route(stages).get(route_key, []),
            group_by_route(vehicles).get(route_key, []),
        )
        vehicle = next(v for v in view.vehicles if v.id == str(vehicle_id))
        return view, vehicle


def stage_travel_times(view: RouteView) -> list[StageTravelInfo]:
    """Minutes between consecutive stages in persisted order."""
    return [
        StageTravelInfo(
            from_stage=a.name,
            to_stage=b.name,
            minutes=stage_travel_minutes(a.location, b.location),
        )
        for a, b in zip(view.stages, view.stages[1:])
    ]
