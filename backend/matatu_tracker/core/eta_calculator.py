"""Distance/speed/traffic based ETA estimation."""

import logging
import math

from matatu_tracker.config import settings
from matatu_tracker.core.path_matcher import StageOnPath, haversine_m
from matatu_tracker.schemas.geo import Coordinate

logger = logging.getLogger(__name__)


def path_length_m(points: list[Coordinate]) -> float:
    return sum(haversine_m(points[i - 1], points[i]) for i in range(1, len(points)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_minutes(
    distance_m: float,
    speed_kmh: float | None = None,
    traffic_multiplier: float | None = None,
) -> int:
    """Minutes to cover ``distance_m`` at ``speed_kmh`` scaled by traffic.

    Defaults come from settings. ``speed_kmh`` must be positive; callers
    validate before calling.
    """
    if speed_kmh is None:
        speed_kmh = settings.default_speed_kmh
    if traffic_multiplier is None:
        traffic_multiplier = settings.default_traffic_multiplier
    if speed_kmh <= 0:
        raise ValueError(f"speed_kmh must be > 0, got {speed_kmh}")
    if distance_m < 0:
        raise ValueError(f"distance_m must be >= 0, got {distance_m}")

    hours = (distance_m / 1000 / speed_kmh) * traffic_multiplier
    return _round_half_up(hours * 60)


def stage_travel_minutes(a: Coordinate, b: Coordinate) -> int:
    """Rough minutes between consecutive stages (fixed minutes per km)."""
    km = haversine_m(a, b) / 1000
    return _round_half_up(km * settings.stage_minutes_per_km)


class EtaCalculator:
    """ETAs to upcoming stages from distance along the resolved path."""

    def __init__(
        self,
        speed_kmh: float | None = None,
        traffic_multiplier: float | None = None,
    ) -> None:
        self.speed_kmh = speed_kmh if speed_kmh is not None else settings.default_speed_kmh
        self.traffic_multiplier = (
            traffic_multiplier if traffic_multiplier is not None
            else settings.default_traffic_multiplier
        )
        if self.speed_kmh <= 0:
            raise ValueError(f"speed_kmh must be > 0, got {self.speed_kmh}")

    def calculate(
        self,
        cumulative_m: list[float],
        current_index: int,
        stages: list[StageOnPath],
    ) -> list[tuple[StageOnPath, int]]:
        """Minutes to each stage still ahead of ``current_index``.

        Stages behind the vehicle are skipped; order follows the path.
        """
        if not cumulative_m or not stages:
            return []

        here = cumulative_m[current_index]
        results = []
        for stage in sorted(stages, key=lambda s: s.path_index):
            if stage.path_index <= current_index:
                continue
            remaining_m = max(0.0, cumulative_m[stage.path_index] - here)
            minutes = estimate_minutes(remaining_m, self.speed_kmh, self.traffic_multiplier)
            results.append((stage, minutes))
        return results
