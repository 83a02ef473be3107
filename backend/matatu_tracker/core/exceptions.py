"""Exception hierarchy for the route geometry and tracking engine."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for all matatu_tracker errors."""


class NotFound(TrackerError):
    """A route, vehicle or tracking session id has no match."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier!r} not found")


class InvalidCoordinate(TrackerError):
    """Latitude/longitude outside the valid range (bad upstream data)."""

    def __init__(self, latitude: object, longitude: object) -> None:
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(f"Invalid coordinate ({latitude}, {longitude})")


class MalformedEncoding(TrackerError):
    """Encoded polyline string could not be parsed."""


class ProviderUnavailable(TrackerError):
    """Directions provider failed, answered non-OK, or is not configured."""

    def __init__(self, message: str, *, status: str = "") -> None:
        self.status = status
        super().__init__(message)


class GeometryUnavailable(TrackerError):
    """Every geometry source was exhausted and a non-empty path was required."""

    def __init__(self, route_id: str, attempts: list[str]) -> None:
        self.route_id = route_id
        self.attempts = attempts
        super().__init__(f"No geometry for route {route_id!r}: {'; '.join(attempts) or 'no sources'}")


class StoreFetchError(TrackerError):
    """One or more store collections could not be fetched.

    Each failing collection is listed in ``failures`` so partial data is
    never merged silently.
    """

    def __init__(self, failures: dict[str, BaseException]) -> None:
        self.failures = failures
        detail = ", ".join(f"{name}: {exc}" for name, exc in failures.items())
        super().__init__(f"Store fetch failed ({detail})")


class SessionClosed(TrackerError):
    """A tick or result arrived for a torn-down tracking session."""


class InvalidTransition(TrackerError):
    """Requested action is not allowed in the session's current state."""

    def __init__(self, action: str, state: str) -> None:
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while session is {state}")
