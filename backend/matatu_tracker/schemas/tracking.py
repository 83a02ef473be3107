import enum

from pydantic import BaseModel

from matatu_tracker.schemas.geo import BoundingRegion, Coordinate, PathSource


class TrackingState(str, enum.Enum):
    INITIALIZING = "initializing"
    TRACKING = "tracking"
    MANUAL_OVERRIDE = "manual_override"
    ERROR = "error"
    CLOSED = "closed"


class SessionHandle(BaseModel):
    session_id: str
    vehicle_id: str


class NextStageInfo(BaseModel):
    id: str
    name: str
    eta_minutes: int


class TrackingFrame(BaseModel):
    session_id: str
    vehicle_id: str
    state: TrackingState
    generation: int
    route_id: str | None = None
    route_name: str | None = None
    plate_number: str | None = None
    position: Coordinate | None = None
    reported_location: Coordinate | None = None
    path_index: int | None = None
    path_length: int = 0
    path_source: PathSource = PathSource.NONE
    status_label: str = ""
    remaining_eta_minutes: float = 0.0
    auto_follow: bool = False
    camera: BoundingRegion | None = None
    next_stages: list[NextStageInfo] = []
    error: str | None = None


class StartTrackingRequest(BaseModel):
    vehicle_id: str


class SwitchVehicleRequest(BaseModel):
    vehicle_id: str


class UserLocationUpdate(BaseModel):
    latitude: float
    longitude: float
