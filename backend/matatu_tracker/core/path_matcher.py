"""Locate coordinates on a resolved path using Shapely spatial indexing."""

import logging
import math
from dataclasses import dataclass

from shapely.geometry import Point
from shapely.strtree import STRtree

from matatu_tracker.schemas.geo import Coordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Distance in meters between two coordinates."""
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(h))


@dataclass
class StageOnPath:
    stage_id: str
    name: str
    latitude: float
    longitude: float
    path_index: int  # nearest path vertex


class PathMatcher:
    """Nearest-vertex lookup and cumulative distances for one path."""

    def __init__(self, points: list[Coordinate]) -> None:
        self.points = points
        # Shapely uses (x, y) = (lng, lat)
        self._tree = (
            STRtree([Point(p.longitude, p.latitude) for p in points]) if points else None
        )
        cum = [0.0] * len(points)
        for i in range(1, len(points)):
            cum[i] = cum[i - 1] + haversine_m(points[i - 1], points[i])
        self.cumulative_m = cum

    @property
    def total_length_m(self) -> float:
        return self.cumulative_m[-1] if self.cumulative_m else 0.0

    def nearest_index(self, coord: Coordinate) -> int | None:
        """Index of the path vertex closest to ``coord`` (planar degrees)."""
        if self._tree is None:
            return None
        idx = self._tree.nearest(Point(coord.longitude, coord.latitude))
        return None if idx is None else int(idx)

    def remaining_m(self, index: int) -> float:
        """Distance from vertex ``index`` to the end of the path."""
        if not self.cumulative_m:
            return 0.0
        return self.total_length_m - self.cumulative_m[index]

    def place_stages(self, stages) -> list[StageOnPath]:
        """Attach each stage (anything with id/name/location) to its nearest vertex."""
        placed = []
        for s in stages:
            idx = self.nearest_index(s.location)
            if idx is None:
                continue
            placed.append(StageOnPath(
                stage_id=s.id,
                name=s.name,
                latitude=s.location.latitude,
                longitude=s.location.longitude,
                path_index=idx,
            ))
        logger.debug("Placed %d/%d stages on path of %d points", len(placed), len(stages), len(self.points))
        return placed
