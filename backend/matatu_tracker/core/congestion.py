"""Total order over stage congestion levels."""

from collections.abc import Iterable

from matatu_tracker.config import settings

UNKNOWN = "unknown"

# Ascending severity; anything unrecognised ranks below "low"
LEVELS = ("low", "medium", "high", "severe")
_RANK = {level: i + 1 for i, level in enumerate(LEVELS)}

# Levels the route detail view can colour; others display as "low"
DISPLAY_LEVELS = ("low", "medium", "high")


def normalize(level: str | None) -> str:
    """Canonical lower-case level, or ``"unknown"``."""
    if not isinstance(level, str):
        return UNKNOWN
    key = level.strip().lower()
    return key if key in _RANK else UNKNOWN


def rank(level: str | None) -> int:
    return _RANK.get(normalize(level), 0)


def worst(levels: Iterable[str | None]) -> str:
    """Highest-ranked level, ``"unknown"`` for empty input."""
    best = UNKNOWN
    best_rank = 0
    for level in levels:
        r = rank(level)
        if r > best_rank:
            best, best_rank = normalize(level), r
    return best


def display_level(level: str | None) -> str:
    key = normalize(level)
    return key if key in DISPLAY_LEVELS else "low"


def traffic_multiplier(level: str | None) -> float:
    multipliers = settings.congestion_multipliers
    return multipliers.get(normalize(level), settings.default_traffic_multiplier)
