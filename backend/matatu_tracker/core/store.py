"""Collection-style read/write access to routes, stages and vehicles."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.orm import selectinload

from matatu_tracker.models.tables import Route, RouteCoordinate, Stage, Vehicle
from matatu_tracker.schemas.geo import Coordinate

logger = logging.getLogger(__name__)


@dataclass
class RouteRecord:
    id: str
    name: str = ""
    start_location: str = ""
    end_location: str = ""
    start_lat: float | None = None
    start_lng: float | None = None
    end_lat: float | None = None
    end_lng: float | None = None
    fare_amount: float = 0.0
    estimated_time: int = 0
    description: str = ""
    distance: float = 0.0
    route_coordinates: list[dict] = field(default_factory=list)  # [{latitude, longitude, point_order}]


@dataclass
class StageRecord:
    id: str
    route_id: str
    name: str = ""
    latitude: float | None = None
    longitude: float | None = None
    congestion: str | None = None


@dataclass
class VehicleRecord:
    id: str
    route_id: str
    plate_number: str = ""
    capacity: int = 0
    available: int = 0
    latitude: float | None = None
    longitude: float | None = None


class SqlStore:
    """Store backed by the SQLAlchemy async session factory.

    Each fetch opens its own session so the three collections can be
    queried concurrently.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def fetch_routes(self) -> list[RouteRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Route).options(selectinload(Route.route_coordinates))
            )
            routes = result.scalars().all()

        records = [
            RouteRecord(
                id=r.id,
                name=r.name,
                start_location=r.start_location,
                end_location=r.end_location,
                start_lat=r.start_lat,
                start_lng=r.start_lng,
                end_lat=r.end_lat,
                end_lng=r.end_lng,
                fare_amount=r.fare_amount,
                estimated_time=r.estimated_time,
                description=r.description,
                distance=r.distance,
                route_coordinates=[
                    {"latitude": c.latitude, "longitude": c.longitude, "point_order": c.point_order}
                    for c in r.route_coordinates
                ],
            )
            for r in routes
        ]
        logger.debug("Fetched %d routes from store", len(records))
        return records

    async def fetch_stages(self) -> list[StageRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(Stage))
            stages = result.scalars().all()
        return [
            StageRecord(
                id=s.id, route_id=s.route_id, name=s.name,
                latitude=s.latitude, longitude=s.longitude, congestion=s.congestion,
            )
            for s in stages
        ]

    async def fetch_vehicles(self) -> list[VehicleRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(Vehicle))
            vehicles = result.scalars().all()
        return [
            VehicleRecord(
                id=v.id, route_id=v.route_id, plate_number=v.plate_number,
                capacity=v.capacity, available=v.available,
                latitude=v.latitude, longitude=v.longitude,
            )
            for v in vehicles
        ]

    async def replace_route_coordinates(self, route_id: str, points: list[Coordinate]) -> int:
        """Replace a route's stored polyline; point_order follows list order."""
        async with self.session_factory() as session:
            await session.execute(
                delete(RouteCoordinate).where(RouteCoordinate.route_id == route_id)
            )
            session.add_all([
                RouteCoordinate(
                    route_id=route_id,
                    latitude=p.latitude,
                    longitude=p.longitude,
                    point_order=i,
                )
                for i, p in enumerate(points)
            ])
            await session.commit()
        logger.info("Stored %d geometry points for route %s", len(points), route_id)
        return len(points)
