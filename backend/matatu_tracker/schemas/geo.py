import enum
import math

from pydantic import BaseModel, ConfigDict, model_validator

from matatu_tracker.core.exceptions import InvalidCoordinate


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float

    @model_validator(mode="after")
    def _check_range(self) -> "Coordinate":
        lat, lng = self.latitude, self.longitude
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InvalidCoordinate(lat, lng)
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise InvalidCoordinate(lat, lng)
        return self

    @classmethod
    def from_raw(cls, latitude, longitude) -> "Coordinate":
        """Build from untrusted store values (None, strings, numbers)."""
        try:
            lat = float(latitude)
            lng = float(longitude)
        except (TypeError, ValueError):
            raise InvalidCoordinate(latitude, longitude) from None
        return cls(latitude=lat, longitude=lng)

    def as_param(self) -> str:
        """Format as the provider's ``"lat,lng"`` origin/destination value."""
        return f"{self.latitude},{self.longitude}"


class PathSource(str, enum.Enum):
    PROVIDER = "provider"
    STORED_GEOMETRY = "stored-geometry"
    STAGE_CHAIN = "stage-chain"
    NONE = "none"


ROUTE_LOADED = "route loaded"
BASIC_ROUTE = "basic route"


class ResolvedPath(BaseModel):
    points: list[Coordinate] = []
    source: PathSource = PathSource.NONE
    attempts: list[str] = []  # "<step>: <reason>" for every failed source

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def status_label(self) -> str:
        if self.source in (PathSource.PROVIDER, PathSource.STORED_GEOMETRY):
            return ROUTE_LOADED
        return BASIC_ROUTE


class BoundingRegion(BaseModel):
    center: Coordinate
    span_lat: float
    span_lng: float


def dedupe_consecutive(points: list[Coordinate]) -> list[Coordinate]:
    """Drop points identical to their predecessor."""
    result: list[Coordinate] = []
    for p in points:
        if result and result[-1] == p:
            continue
        result.append(p)
    return result
