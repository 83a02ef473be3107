"""Live tracking sessions: simulated movement along a resolved path.

Each session walks ``initializing -> tracking <-> manual_override`` with
``error`` reachable from initializing or tracking. Two independent interval
jobs drive it: the position tick loops the simulated vehicle around the
path, the ETA tick counts remaining minutes down to zero. Every write to a
session happens under its lock, and every asynchronous result is checked
against the session's generation before it is applied.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field

from apscheduler.job import Job

from matatu_tracker.config import settings
from matatu_tracker.core import congestion
from matatu_tracker.core.aggregator import RouteAggregator
from matatu_tracker.core.broadcaster import Broadcaster
from matatu_tracker.core.eta_calculator import EtaCalculator, estimate_minutes
from matatu_tracker.core.exceptions import (
    InvalidCoordinate,
    InvalidTransition,
    NotFound,
    SessionClosed,
    StoreFetchError,
)
from matatu_tracker.core.geometry_resolver import GeometryResolver
from matatu_tracker.core.path_matcher import PathMatcher, StageOnPath
from matatu_tracker.core.scheduler import cancel_jobs, schedule_session_ticks
from matatu_tracker.schemas.geo import BoundingRegion, Coordinate, ResolvedPath
from matatu_tracker.schemas.route import RouteView, VehicleView
from matatu_tracker.schemas.tracking import (
    NextStageInfo,
    SessionHandle,
    TrackingFrame,
    TrackingState,
)

logger = logging.getLogger(__name__)

_LIVE_STATES = (TrackingState.TRACKING, TrackingState.MANUAL_OVERRIDE)


@dataclass
class TrackingSession:
    session_id: str
    vehicle_id: str
    state: TrackingState = TrackingState.INITIALIZING
    generation: int = 0

    route: RouteView | None = None
    vehicle: VehicleView | None = None
    path: ResolvedPath = field(default_factory=ResolvedPath)
    matcher: PathMatcher | None = None
    stages_on_path: list[StageOnPath] = field(default_factory=list)

    index: int = 0
    position: Coordinate | None = None
    remaining_eta: float = 0.0  # minutes
    auto_follow: bool = False
    camera: BoundingRegion | None = None
    user_location: Coordinate | None = None
    error: str | None = None

    last_seen: float = field(default_factory=time.monotonic)

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    init_task: asyncio.Task | None = None
    jobs: list[Job] = field(default_factory=list)

    @property
    def handle(self) -> SessionHandle:
        return SessionHandle(session_id=self.session_id, vehicle_id=self.vehicle_id)

    def reset(self) -> None:
        """Clear everything derived from a previous initialization."""
        self.state = TrackingState.INITIALIZING
        self.route = None
        self.vehicle = None
        self.path = ResolvedPath()
        self.matcher = None
        self.stages_on_path = []
        self.index = 0
        self.position = None
        self.remaining_eta = 0.0
        self.auto_follow = False
        self.camera = None
        self.error = None


class TrackingEngine:
    """Owns every live tracking session and its timers."""

    def __init__(
        self,
        aggregator: RouteAggregator,
        resolver: GeometryResolver,
        scheduler,
        broadcaster: Broadcaster | None = None,
        *,
        position_tick_seconds: float | None = None,
        eta_tick_seconds: float | None = None,
        eta_decrement_minutes: float | None = None,
        idle_timeout_seconds: float | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.resolver = resolver
        self.scheduler = scheduler
        self.broadcaster = broadcaster
        self.position_tick_seconds = position_tick_seconds or settings.position_tick_seconds
        self.eta_tick_seconds = eta_tick_seconds or settings.eta_tick_seconds
        self.eta_decrement_minutes = (
            settings.eta_tick_decrement_minutes if eta_decrement_minutes is None
            else eta_decrement_minutes
        )
        self.idle_timeout_seconds = idle_timeout_seconds or settings.session_idle_timeout_seconds
        self.sessions: dict[str, TrackingSession] = {}

    # ------------------------------------------------------------------
    # Session lifecycle

    async def start_tracking(self, vehicle_id: str) -> SessionHandle:
        """Open a session and start initializing it in the background."""
        session = TrackingSession(session_id=uuid.uuid4().hex, vehicle_id=str(vehicle_id))
        self.sessions[session.session_id] = session
        logger.info("Tracking session %s opened for vehicle %s", session.session_id, vehicle_id)
        self._begin_initialization(session)
        return session.handle

    async def stop_tracking(self, handle: SessionHandle | str) -> None:
        """Tear a session down: timers and in-flight work are cancelled."""
        session_id = handle.session_id if isinstance(handle, SessionHandle) else handle
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        async with session.lock:
            self._halt(session)
            session.state = TrackingState.CLOSED
        if self.broadcaster:
            await self.broadcaster.forget(session_id)
        logger.info("Tracking session %s closed", session_id)

    async def close(self) -> None:
        for session_id in list(self.sessions):
            await self.stop_tracking(session_id)

    async def viewer_left(self, session_id: str) -> None:
        """Close the session once its last live viewer has disconnected."""
        if self.broadcaster is None or session_id not in self.sessions:
            return
        if self.broadcaster.subscriber_count(session_id) == 0:
            logger.info("Last viewer of session %s left", session_id)
            await self.stop_tracking(session_id)

    async def reap_idle(self, now: float | None = None) -> list[str]:
        """Close sessions with no viewer that have not been used for the idle timeout."""
        now = time.monotonic() if now is None else now
        idle = [
            s.session_id for s in self.sessions.values()
            if now - s.last_seen > self.idle_timeout_seconds
            and not (self.broadcaster and self.broadcaster.subscriber_count(s.session_id))
        ]
        for session_id in idle:
            logger.info("Closing idle tracking session %s", session_id)
            await self.stop_tracking(session_id)
        return idle

    async def wait_initialized(self, handle: SessionHandle | str) -> TrackingFrame:
        """Wait for the current initialization attempt, then snapshot."""
        session = self._get(handle)
        task = session.init_task
        if task is not None and not task.done():
            await asyncio.wait([task])
        return self.snapshot(session.session_id)

    async def retry(self, handle: SessionHandle | str) -> SessionHandle:
        """Restart a failed session from scratch."""
        session = self._get(handle)
        async with session.lock:
            if session.state is not TrackingState.ERROR:
                raise InvalidTransition("retry", session.state.value)
            self._halt(session)
            self._begin_initialization(session)
        return session.handle

    async def switch_vehicle(self, handle: SessionHandle | str, vehicle_id: str) -> SessionHandle:
        """Retarget a session; results for the previous vehicle are discarded."""
        session = self._get(handle)
        async with session.lock:
            self._halt(session)
            session.vehicle_id = str(vehicle_id)
            self._begin_initialization(session)
        logger.info("Tracking session %s switched to vehicle %s", session.session_id, vehicle_id)
        return session.handle

    def _halt(self, session: TrackingSession) -> None:
        """Invalidate in-flight work and cancel timers. Caller holds the lock."""
        session.generation += 1
        cancel_jobs(session.jobs)
        session.jobs = []
        task = session.init_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        session.init_task = None

    def _begin_initialization(self, session: TrackingSession) -> None:
        session.generation += 1
        session.reset()
        session.init_task = asyncio.create_task(
            self._initialize(session, session.generation),
            name=f"tracking-init-{session.session_id}-{session.generation}",
        )

    # ------------------------------------------------------------------
    # Initialization

    async def _initialize(self, session: TrackingSession, generation: int) -> None:
        try:
            route, vehicle = await self.aggregator.locate_vehicle(session.vehicle_id)
            path = await self.resolver.resolve(route)
        except (NotFound, InvalidCoordinate, StoreFetchError) as e:
            await self._fail(session, generation, str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error initializing session %s", session.session_id)
            await self._fail(session, generation, f"Unexpected error: {type(e).__name__}")
            return

        if path.is_empty and vehicle.location is None:
            await self._fail(
                session, generation,
                f"Vehicle {vehicle.id} has no reported location and route {route.id} has no geometry",
            )
            return

        matcher = PathMatcher(path.points)
        index = 0
        if vehicle.location is not None and not path.is_empty:
            index = matcher.nearest_index(vehicle.location) or 0

        if path.is_empty:
            position = vehicle.location
            eta = float(route.estimated_time)
        else:
            position = path.points[index]
            eta = float(estimate_minutes(
                matcher.remaining_m(index),
                settings.default_speed_kmh,
                congestion.traffic_multiplier(route.congestion),
            ))

        try:
            async with session.lock:
                self._ensure_current(session, generation)
                session.route = route
                session.vehicle = vehicle
                session.path = path
                session.matcher = matcher
                session.stages_on_path = matcher.place_stages(route.stages)
                session.index = index
                session.position = position
                session.remaining_eta = eta
                session.state = TrackingState.TRACKING
                session.auto_follow = True
                session.camera = None
                self._recenter(session)
                session.jobs = schedule_session_ticks(
                    self.scheduler, self, session.session_id, generation,
                    self.position_tick_seconds, self.eta_tick_seconds,
                )
        except SessionClosed as e:
            logger.debug("Discarding initialization result: %s", e)
            return

        logger.info(
            "Session %s tracking vehicle %s on route %s (%s, %d pts, eta %.1f min)",
            session.session_id, vehicle.id, route.id, path.source.value, len(path.points), eta,
        )
        await self._publish(session)

    async def _fail(self, session: TrackingSession, generation: int, reason: str) -> None:
        try:
            async with session.lock:
                self._ensure_current(session, generation)
                cancel_jobs(session.jobs)
                session.jobs = []
                session.state = TrackingState.ERROR
                session.auto_follow = False
                session.error = reason
        except SessionClosed as e:
            logger.debug("Discarding failure (%s): %s", reason, e)
            return
        logger.warning("Tracking session %s failed: %s", session.session_id, reason)
        await self._publish(session)

    def _ensure_current(self, session: TrackingSession, generation: int | None) -> None:
        """Raise SessionClosed if ``generation`` no longer owns the session."""
        if session.state is TrackingState.CLOSED or session.session_id not in self.sessions:
            raise SessionClosed(f"session {session.session_id} is closed")
        if generation is not None and session.generation != generation:
            raise SessionClosed(
                f"session {session.session_id} moved from generation {generation} "
                f"to {session.generation}"
            )

    # ------------------------------------------------------------------
    # Periodic ticks

    async def tick_position(self, session_id: str, generation: int | None = None) -> None:
        """Advance one vertex along the path, wrapping at the end."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.debug("Position tick for unknown session %s discarded", session_id)
            return
        try:
            async with session.lock:
                self._ensure_current(session, generation)
                if session.state not in _LIVE_STATES:
                    return
                points = session.path.points
                if points:
                    session.index = (session.index + 1) % len(points)
                    session.position = points[session.index]
                if session.auto_follow:
                    self._recenter(session)
        except SessionClosed as e:
            logger.debug("Position tick discarded: %s", e)
            return
        await self._publish(session)

    async def tick_eta(self, session_id: str, generation: int | None = None) -> None:
        """Count the remaining ETA down, never below zero."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.debug("ETA tick for unknown session %s discarded", session_id)
            return
        try:
            async with session.lock:
                self._ensure_current(session, generation)
                if session.state not in _LIVE_STATES:
                    return
                session.remaining_eta = max(0.0, session.remaining_eta - self.eta_decrement_minutes)
        except SessionClosed as e:
            logger.debug("ETA tick discarded: %s", e)
            return
        await self._publish(session)

    # ------------------------------------------------------------------
    # User interaction

    async def pan(self, handle: SessionHandle | str) -> TrackingFrame:
        """User dragged the map: stop recentring, keep simulating."""
        session = self._get(handle)
        async with session.lock:
            if session.state is TrackingState.TRACKING:
                session.state = TrackingState.MANUAL_OVERRIDE
                session.auto_follow = False
            elif session.state is not TrackingState.MANUAL_OVERRIDE:
                raise InvalidTransition("pan", session.state.value)
        await self._publish(session)
        return self.snapshot(session.session_id)

    async def follow_vehicle(self, handle: SessionHandle | str) -> TrackingFrame:
        """Explicit user action that re-enables auto-follow."""
        session = self._get(handle)
        async with session.lock:
            if session.state is TrackingState.MANUAL_OVERRIDE:
                session.state = TrackingState.TRACKING
                session.auto_follow = True
                session.camera = None
                self._recenter(session)
            elif session.state is not TrackingState.TRACKING:
                raise InvalidTransition("follow vehicle", session.state.value)
        await self._publish(session)
        return self.snapshot(session.session_id)

    async def update_user_location(
        self, handle: SessionHandle | str, location: Coordinate,
    ) -> TrackingFrame:
        """Record the viewer's own location; the camera frames both when following."""
        session = self._get(handle)
        async with session.lock:
            session.user_location = location
            if session.auto_follow:
                self._recenter(session)
        await self._publish(session)
        return self.snapshot(session.session_id)

    def _recenter(self, session: TrackingSession) -> None:
        """Centre the camera on the vehicle (or vehicle/user midpoint).

        Skips moves below the follow threshold. Caller holds the lock.
        """
        if session.position is None:
            return
        target = session.position
        if session.user_location is not None:
            target = Coordinate(
                latitude=(target.latitude + session.user_location.latitude) / 2,
                longitude=(target.longitude + session.user_location.longitude) / 2,
            )

        current = session.camera
        threshold = settings.follow_threshold_deg
        if current is not None:
            lat_diff = abs(current.center.latitude - target.latitude)
            lng_diff = abs(current.center.longitude - target.longitude)
            if lat_diff <= threshold and lng_diff <= threshold:
                return
        session.camera = BoundingRegion(
            center=target, span_lat=settings.follow_span, span_lng=settings.follow_span,
        )

    # ------------------------------------------------------------------
    # Views

    def _get(self, handle: SessionHandle | str) -> TrackingSession:
        session_id = handle.session_id if isinstance(handle, SessionHandle) else handle
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("session", session_id)
        session.last_seen = time.monotonic()
        return session

    def get_session(self, handle: SessionHandle | str) -> TrackingSession:
        return self._get(handle)

    def _next_stages(self, session: TrackingSession) -> list[NextStageInfo]:
        if session.matcher is None or not session.stages_on_path or session.route is None:
            return []
        calc = EtaCalculator(
            traffic_multiplier=congestion.traffic_multiplier(session.route.congestion),
        )
        etas = calc.calculate(session.matcher.cumulative_m, session.index, session.stages_on_path)
        return [
            NextStageInfo(id=stage.stage_id, name=stage.name, eta_minutes=minutes)
            for stage, minutes in etas
        ]

    def snapshot(self, handle: SessionHandle | str) -> TrackingFrame:
        """Current frame; counts as activity for the idle timeout."""
        return self._frame(self._get(handle))

    def _frame(self, session: TrackingSession) -> TrackingFrame:
        route = session.route
        vehicle = session.vehicle
        has_path = not session.path.is_empty
        return TrackingFrame(
            session_id=session.session_id,
            vehicle_id=session.vehicle_id,
            state=session.state,
            generation=session.generation,
            route_id=route.id if route else None,
            route_name=route.name if route else None,
            plate_number=vehicle.plate_number if vehicle else None,
            position=session.position,
            reported_location=vehicle.location if vehicle else None,
            path_index=session.index if has_path else None,
            path_length=len(session.path.points),
            path_source=session.path.source,
            status_label=session.path.status_label if route else "",
            remaining_eta_minutes=round(session.remaining_eta, 2),
            auto_follow=session.auto_follow,
            camera=session.camera,
            next_stages=self._next_stages(session),
            error=session.error,
        )

    async def _publish(self, session: TrackingSession) -> None:
        if self.broadcaster is None or session.session_id not in self.sessions:
            return
        frame = self._frame(session)
        await self.broadcaster.publish(session.session_id, frame.model_dump(mode="json"))

    def get_diagnostics(self) -> dict:
        by_state: dict[str, int] = {}
        sessions = []
        for s in self.sessions.values():
            by_state[s.state.value] = by_state.get(s.state.value, 0) + 1
            sessions.append({
                "session_id": s.session_id,
                "vehicle_id": s.vehicle_id,
                "state": s.state.value,
                "generation": s.generation,
                "path_source": s.path.source.value,
                "path_points": len(s.path.points),
                "geometry_attempts": s.path.attempts,
                "timers": [job.id for job in s.jobs],
                "rejected_vehicles": s.route.rejected_vehicles if s.route else [],
                "error": s.error,
            })
        return {
            "total_sessions": len(self.sessions),
            "sessions_by_state": by_state,
            "sessions": sessions,
        }
