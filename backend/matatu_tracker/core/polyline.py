"""Encoded polyline codec (Google format, 1e-5 degree precision).

Encoding and decoding are delegated to the ``polyline`` package. This module
adds the strictness that package leaves out: characters outside the format's
alphabet, truncated values and out-of-range points all raise
MalformedEncoding instead of yielding a partial or garbage path.
"""

import math

import polyline as google_polyline

from matatu_tracker.core.exceptions import InvalidCoordinate, MalformedEncoding
from matatu_tracker.schemas.geo import Coordinate

PRECISION = 5
_FACTOR = 10 ** PRECISION

# Every encoded chunk is a 6-bit value offset by 63
_MIN_CHAR = 63
_MAX_CHAR = 63 + 0x3F


def _to_units(value: float) -> int:
    """Scale degrees to integer 1e-5 units, rounding half away from zero."""
    scaled = abs(value) * _FACTOR
    units = int(math.floor(scaled + 0.5))
    return -units if value < 0 else units


def round_coordinate(coord: Coordinate) -> Coordinate:
    """Round to the format's native precision; the codec's only lossy step."""
    return Coordinate(
        latitude=_to_units(coord.latitude) / _FACTOR,
        longitude=_to_units(coord.longitude) / _FACTOR,
    )


def encode(points: list[Coordinate]) -> str:
    """Encode coordinates into a polyline string."""
    return google_polyline.encode(
        [(p.latitude, p.longitude) for p in points], precision=PRECISION,
    )


def _check_alphabet(encoded: str) -> None:
    for offset, char in enumerate(encoded):
        if not _MIN_CHAR <= ord(char) <= _MAX_CHAR:
            raise MalformedEncoding(f"Invalid character {char!r} at offset {offset}")


def decode(encoded: str) -> list[Coordinate]:
    """Decode a polyline string. All-or-nothing: raises MalformedEncoding."""
    if not isinstance(encoded, str):
        raise MalformedEncoding(f"Expected str, got {type(encoded).__name__}")
    _check_alphabet(encoded)

    try:
        pairs = google_polyline.decode(encoded, PRECISION)
    except (IndexError, ValueError) as e:
        # The decoder reads past the end on a truncated value or a latitude
        # without its longitude
        raise MalformedEncoding(f"Truncated polyline ({len(encoded)} chars)") from e

    coords: list[Coordinate] = []
    for lat, lng in pairs:
        try:
            coords.append(Coordinate(latitude=lat, longitude=lng))
        except InvalidCoordinate as e:
            raise MalformedEncoding(f"Decoded point out of range: {e}") from e
    return coords
