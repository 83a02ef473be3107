"""Tests for TrackingEngine sessions, ticks and camera follow."""

import asyncio
import time

import orjson
import pytest

from matatu_tracker.core.aggregator import RouteAggregator
from matatu_tracker.core.broadcaster import Broadcaster
from matatu_tracker.core.exceptions import InvalidTransition, NotFound
from matatu_tracker.core.geometry_resolver import GeometryResolver
from matatu_tracker.core.scheduler import create_scheduler, schedule_idle_sweep
from matatu_tracker.core.tracking import TrackingEngine
from matatu_tracker.schemas.geo import Coordinate, PathSource
from matatu_tracker.schemas.tracking import TrackingState

from fakes import FakeDirections, FakeStore, make_route, make_stage, make_vehicle

# Four vertices ~556 m apart heading east
PATH = ((-1.2840, 36.8200), (-1.2840, 36.8250), (-1.2840, 36.8300), (-1.2840, 36.8350))


def _store(**vehicle_kwargs):
    vehicle_kwargs.setdefault("lat", PATH[0][0])
    vehicle_kwargs.setdefault("lng", PATH[0][1])
    return FakeStore(
        routes=[make_route("r1", PATH, estimated_time=30)],
        vehicles=[make_vehicle("v1", "r1", **vehicle_kwargs)],
    )


def _engine(store, directions=None, broadcaster=None):
    scheduler = create_scheduler()
    directions = directions or FakeDirections(configured=False)
    engine = TrackingEngine(
        RouteAggregator(store),
        GeometryResolver(directions),
        scheduler,
        broadcaster,
    )
    return engine, scheduler


async def _started(store, **kwargs):
    engine, scheduler = _engine(store, **kwargs)
    handle = await engine.start_tracking("v1")
    frame = await engine.wait_initialized(handle)
    return engine, scheduler, handle, frame


@pytest.mark.asyncio
async def test_initializes_to_tracking_with_timers():
    engine, scheduler, handle, frame = await _started(_store())
    assert frame.state is TrackingState.TRACKING
    assert frame.auto_follow is True
    assert frame.path_source is PathSource.STORED_GEOMETRY
    assert frame.status_label == "route loaded"
    assert frame.path_index == 0
    assert frame.camera.center == frame.position
    assert sorted(job.id for job in scheduler.get_jobs()) == [
        f"{handle.session_id}:eta:{frame.generation}",
        f"{handle.session_id}:position:{frame.generation}",
    ]


@pytest.mark.asyncio
async def test_starts_at_vertex_nearest_reported_location():
    _, _, _, frame = await _started(_store(lat=-1.2841, lng=36.8301))
    assert frame.path_index == 2


@pytest.mark.asyncio
async def test_position_loops_around_path():
    engine, _, handle, _ = await _started(_store())
    indexes = []
    for _ in range(len(PATH) * 2):
        await engine.tick_position(handle.session_id)
        indexes.append(engine.snapshot(handle).path_index)
    assert indexes == [1, 2, 3, 0, 1, 2, 3, 0]
    assert engine.snapshot(handle).position == Coordinate(latitude=PATH[0][0], longitude=PATH[0][1])


@pytest.mark.asyncio
async def test_empty_path_uses_reported_location():
    store = FakeStore(
        routes=[make_route("r1", estimated_time=30)],
        vehicles=[make_vehicle("v1", "r1", -1.2840, 36.8200)],
    )
    engine, _, handle, frame = await _started(store)
    assert frame.state is TrackingState.TRACKING
    assert frame.path_length == 0
    assert frame.path_index is None
    assert frame.status_label == "basic route"
    assert frame.remaining_eta_minutes == 30

    await engine.tick_position(handle.session_id)
    assert engine.snapshot(handle).position == frame.position


@pytest.mark.asyncio
async def test_eta_counts_down_to_zero():
    engine, _, handle, frame = await _started(_store())
    # ~1668 m at 25 km/h
    assert frame.remaining_eta_minutes == 4

    values = []
    for _ in range(60):
        await engine.tick_eta(handle.session_id)
        values.append(engine.snapshot(handle).remaining_eta_minutes)
    assert values == sorted(values, reverse=True)
    assert min(values) >= 0
    assert values[-1] == 0


@pytest.mark.asyncio
async def test_eta_uses_route_congestion():
    store = _store()
    store.stages = [make_stage("s1", "r1", *PATH[0], congestion="severe")]
    _, _, _, frame = await _started(store)
    assert frame.remaining_eta_minutes == 8


@pytest.mark.asyncio
async def test_next_stages_ahead_of_vehicle():
    store = _store()
    store.stages = [
        make_stage("s0", "r1", *PATH[0], name="Archives"),
        make_stage("s2", "r1", *PATH[2], name="Kencom"),
        make_stage("s3", "r1", *PATH[3], name="Railways"),
    ]
    _, _, _, frame = await _started(store)
    assert [s.name for s in frame.next_stages] == ["Kencom", "Railways"]
    assert frame.next_stages[0].eta_minutes <= frame.next_stages[1].eta_minutes


@pytest.mark.asyncio
async def test_pan_stops_follow_and_follow_resumes():
    engine, _, handle, frame = await _started(_store())

    await engine.tick_position(handle.session_id)
    assert engine.snapshot(handle).camera.center == engine.snapshot(handle).position

    panned = await engine.pan(handle)
    assert panned.state is TrackingState.MANUAL_OVERRIDE
    assert panned.auto_follow is False
    camera = panned.camera

    await engine.tick_position(handle.session_id)
    await engine.tick_position(handle.session_id)
    moved = engine.snapshot(handle)
    assert moved.path_index == 3
    assert moved.camera == camera

    # Panning again while already manual changes nothing
    assert (await engine.pan(handle)).state is TrackingState.MANUAL_OVERRIDE

    followed = await engine.follow_vehicle(handle)
    assert followed.state is TrackingState.TRACKING
    assert followed.auto_follow is True
    assert followed.camera.center == followed.position


@pytest.mark.asyncio
async def test_camera_frames_user_and_vehicle():
    engine, _, handle, frame = await _started(_store())
    user = Coordinate(latitude=-1.2940, longitude=36.8200)
    updated = await engine.update_user_location(handle, user)
    assert updated.camera.center.latitude == pytest.approx(-1.2890)
    assert updated.camera.center.longitude == pytest.approx(36.8200)
    assert updated.camera.span_lat == 0.02

    # Midpoint moves by less than the threshold: camera stays put
    nudged = await engine.update_user_location(
        handle, Coordinate(latitude=-1.2945, longitude=36.8201),
    )
    assert nudged.camera == updated.camera


@pytest.mark.asyncio
async def test_unknown_vehicle_errors():
    engine, scheduler = _engine(_store())
    handle = await engine.start_tracking("v404")
    frame = await engine.wait_initialized(handle)
    assert frame.state is TrackingState.ERROR
    assert "not found" in frame.error
    assert scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_no_path_and_no_location_errors_then_retry():
    store = FakeStore(
        routes=[make_route("r1")],
        vehicles=[make_vehicle("v1", "r1")],
    )
    engine, scheduler, handle, frame = await _started(store)
    assert frame.state is TrackingState.ERROR
    assert frame.auto_follow is False

    with pytest.raises(InvalidTransition):
        await engine.pan(handle)
    with pytest.raises(InvalidTransition):
        await engine.follow_vehicle(handle)

    store.routes = [make_route("r1", PATH)]
    await engine.retry(handle)
    retried = await engine.wait_initialized(handle)
    assert retried.state is TrackingState.TRACKING
    assert retried.generation > frame.generation
    assert len(scheduler.get_jobs()) == 2


@pytest.mark.asyncio
async def test_retry_only_from_error():
    engine, _, handle, _ = await _started(_store())
    with pytest.raises(InvalidTransition):
        await engine.retry(handle)


@pytest.mark.asyncio
async def test_stop_cancels_timers():
    engine, scheduler, handle, _ = await _started(_store())
    assert len(scheduler.get_jobs()) == 2

    await engine.stop_tracking(handle)
    assert scheduler.get_jobs() == []
    assert handle.session_id not in engine.sessions
    with pytest.raises(NotFound):
        engine.snapshot(handle)

    # Late ticks and a second stop are harmless
    await engine.tick_position(handle.session_id)
    await engine.tick_eta(handle.session_id)
    await engine.stop_tracking(handle)


@pytest.mark.asyncio
async def test_stop_during_initialization():
    store = _store()
    store.routes = [make_route("r1", PATH, start_location="slow", end_location="B")]
    directions = FakeDirections()
    directions.gates["slow"] = asyncio.Event()
    engine, scheduler = _engine(store, directions=directions)

    handle = await engine.start_tracking("v1")
    while not directions.calls:
        await asyncio.sleep(0)
    session = engine.get_session(handle)
    await engine.stop_tracking(handle)
    directions.gates["slow"].set()
    await asyncio.sleep(0)

    assert session.state is TrackingState.CLOSED
    assert session.init_task is None
    assert scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_switch_vehicle_discards_previous_results():
    store = FakeStore(
        routes=[
            make_route("ra", PATH, start_location="slow", end_location="B"),
            make_route("rb", ((-1.2200, 36.8900), (-1.2250, 36.8950))),
        ],
        vehicles=[
            make_vehicle("v1", "ra", *PATH[0]),
            make_vehicle("v2", "rb", -1.2200, 36.8900),
        ],
    )
    directions = FakeDirections()
    directions.gates["slow"] = asyncio.Event()
    engine, scheduler = _engine(store, directions=directions)

    handle = await engine.start_tracking("v1")
    while not directions.calls:
        await asyncio.sleep(0)
    stale_generation = engine.get_session(handle).generation

    await engine.switch_vehicle(handle, "v2")
    frame = await engine.wait_initialized(handle)
    directions.gates["slow"].set()
    await asyncio.sleep(0)

    assert frame.state is TrackingState.TRACKING
    assert frame.vehicle_id == "v2"
    assert frame.route_id == "rb"
    assert engine.snapshot(handle).route_id == "rb"
    assert all(job.id.endswith(f":{frame.generation}") for job in scheduler.get_jobs())
    assert len(scheduler.get_jobs()) == 2

    # A tick scheduled for the old generation must not move the vehicle
    await engine.tick_position(handle.session_id, stale_generation)
    assert engine.snapshot(handle).path_index == frame.path_index


@pytest.mark.asyncio
async def test_switch_recreates_timers():
    store = _store()
    store.vehicles.append(make_vehicle("v2", "r1", *PATH[3]))
    engine, scheduler, handle, first = await _started(store)
    await engine.switch_vehicle(handle, "v2")
    second = await engine.wait_initialized(handle)
    assert second.path_index == 3
    ids = {job.id for job in scheduler.get_jobs()}
    assert ids == {
        f"{handle.session_id}:position:{second.generation}",
        f"{handle.session_id}:eta:{second.generation}",
    }
    assert second.generation != first.generation


@pytest.mark.asyncio
async def test_frames_are_broadcast():
    broadcaster = Broadcaster()
    engine, _ = _engine(_store(), broadcaster=broadcaster)
    handle = await engine.start_tracking("v1")
    queue = broadcaster.subscribe(handle.session_id)
    await engine.wait_initialized(handle)

    message = orjson.loads(queue.get_nowait())
    assert message["type"] == "frame"
    assert message["frame"]["state"] == "tracking"

    await engine.stop_tracking(handle)
    closed = orjson.loads(queue.get_nowait())
    assert closed == {"type": "closed", "session_id": handle.session_id}


@pytest.mark.asyncio
async def test_diagnostics():
    engine, _, handle, _ = await _started(_store())
    diag = engine.get_diagnostics()
    assert diag["total_sessions"] == 1
    assert diag["sessions_by_state"] == {"tracking": 1}
    assert diag["sessions"][0]["path_source"] == "stored-geometry"
    await engine.close()
    assert engine.get_diagnostics()["total_sessions"] == 0


@pytest.mark.asyncio
async def test_bad_sibling_vehicle_does_not_block_tracking():
    store = _store()
    store.vehicles.append(make_vehicle("bad", "r1", -1.2840, None))
    engine, _, handle, frame = await _started(store)
    assert frame.state is TrackingState.TRACKING
    assert engine.get_diagnostics()["sessions"][0]["rejected_vehicles"] == ["bad"]


@pytest.mark.asyncio
async def test_user_location_update_is_broadcast():
    broadcaster = Broadcaster()
    engine, _, handle, _ = await _started(_store(), broadcaster=broadcaster)
    queue = broadcaster.subscribe(handle.session_id)

    await engine.update_user_location(handle, Coordinate(latitude=-1.2940, longitude=36.8200))
    message = orjson.loads(queue.get_nowait())
    assert message["frame"]["camera"]["center"]["latitude"] == pytest.approx(-1.2890)


@pytest.mark.asyncio
async def test_last_viewer_leaving_closes_session():
    broadcaster = Broadcaster()
    engine, scheduler, handle, _ = await _started(_store(), broadcaster=broadcaster)
    first = broadcaster.subscribe(handle.session_id)
    second = broadcaster.subscribe(handle.session_id)

    broadcaster.unsubscribe(handle.session_id, first)
    await engine.viewer_left(handle.session_id)
    assert handle.session_id in engine.sessions

    broadcaster.unsubscribe(handle.session_id, second)
    await engine.viewer_left(handle.session_id)
    assert handle.session_id not in engine.sessions
    assert scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_idle_session_is_reaped():
    engine, scheduler, handle, _ = await _started(_store())
    later = time.monotonic() + engine.idle_timeout_seconds + 1

    assert await engine.reap_idle(now=time.monotonic()) == []
    assert await engine.reap_idle(now=later) == [handle.session_id]
    assert engine.sessions == {}
    assert scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_watched_session_is_not_reaped():
    broadcaster = Broadcaster()
    engine, scheduler, handle, _ = await _started(_store(), broadcaster=broadcaster)
    broadcaster.subscribe(handle.session_id)
    later = time.monotonic() + engine.idle_timeout_seconds + 1

    assert await engine.reap_idle(now=later) == []
    assert len(scheduler.get_jobs()) == 2


@pytest.mark.asyncio
async def test_ticks_do_not_count_as_activity():
    engine, _, handle, _ = await _started(_store())
    session = engine.get_session(handle)
    seen = session.last_seen
    await engine.tick_position(handle.session_id)
    await engine.tick_eta(handle.session_id)
    assert session.last_seen == seen


def test_idle_sweep_job():
    scheduler = create_scheduler()
    engine, _ = _engine(_store())
    job = schedule_idle_sweep(scheduler, engine, 60)
    assert job.id == "tracking:idle-sweep"
    assert [j.id for j in scheduler.get_jobs()] == ["tracking:idle-sweep"]
