"""Live tracking session endpoints."""

from fastapi import APIRouter, HTTPException

from matatu_tracker.schemas.geo import Coordinate
from matatu_tracker.schemas.tracking import (
    SessionHandle,
    StartTrackingRequest,
    SwitchVehicleRequest,
    TrackingFrame,
    UserLocationUpdate,
)

router = APIRouter(prefix="/api/tracking", tags=["tracking"])

# Will be set by main.py
engine = None


def _engine():
    if engine is None:
        raise HTTPException(status_code=503, detail="Tracking engine not ready")
    return engine


@router.post("", response_model=SessionHandle, status_code=201)
async def start_tracking(body: StartTrackingRequest):
    """Open a session; initialization continues in the background."""
    return await _engine().start_tracking(body.vehicle_id)


@router.get("/{session_id}", response_model=TrackingFrame)
async def get_session(session_id: str, wait: bool = False):
    """Current frame; ``wait`` blocks until initialization settles."""
    if wait:
        return await _engine().wait_initialized(session_id)
    return _engine().snapshot(session_id)


@router.delete("/{session_id}", status_code=204)
async def stop_tracking(session_id: str):
    await _engine().stop_tracking(session_id)


@router.post("/{session_id}/pan", response_model=TrackingFrame)
async def pan(session_id: str):
    return await _engine().pan(session_id)


@router.post("/{session_id}/follow", response_model=TrackingFrame)
async def follow_vehicle(session_id: str):
    return await _engine().follow_vehicle(session_id)


@router.post("/{session_id}/retry", response_model=SessionHandle)
async def retry(session_id: str):
    return await _engine().retry(session_id)


@router.post("/{session_id}/switch", response_model=SessionHandle)
async def switch_vehicle(session_id: str, body: SwitchVehicleRequest):
    return await _engine().switch_vehicle(session_id, body.vehicle_id)


@router.post("/{session_id}/location", response_model=TrackingFrame)
async def update_user_location(session_id: str, body: UserLocationUpdate):
    location = Coordinate.from_raw(body.latitude, body.longitude)
    return await _engine().update_user_location(session_id, location)
