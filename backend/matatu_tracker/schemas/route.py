from pydantic import BaseModel

from matatu_tracker.schemas.geo import BoundingRegion, Coordinate, PathSource


class StageView(BaseModel):
    id: str
    name: str
    location: Coordinate
    congestion: str | None = None


class VehicleView(BaseModel):
    id: str
    plate_number: str
    location: Coordinate | None = None
    capacity: int = 0
    available: int = 0


class RouteView(BaseModel):
    id: str
    name: str
    start_location: str = ""
    end_location: str = ""
    start: Coordinate | None = None
    end: Coordinate | None = None
    fare_amount: float = 0.0
    estimated_time: int = 0  # minutes
    description: str = ""
    distance: float = 0.0
    congestion: str = "unknown"  # worst stage congestion
    congestion_level: str = "low"  # low/medium/high for display
    coordinates: list[Coordinate] = []  # stored polyline, sorted by point_order
    stages: list[StageView] = []  # persisted order
    vehicles: list[VehicleView] = []
    rejected_vehicles: list[str] = []  # ids skipped for a bad location


class StageTravelInfo(BaseModel):
    from_stage: str
    to_stage: str
    minutes: int


class RouteGeometry(BaseModel):
    route_id: str
    source: PathSource
    status_label: str
    points: list[Coordinate] = []
    region: BoundingRegion
    attempts: list[str] = []


class GeneratedGeometry(BaseModel):
    route_id: str
    points_stored: int


class SkippedRoute(BaseModel):
    id: str
    reason: str


class RouteList(BaseModel):
    routes: list[RouteView] = []
    skipped: list[SkippedRoute] = []  # routes rejected for bad stored coordinates
