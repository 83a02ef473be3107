"""Diagnostics API for live sessions and geometry fallbacks."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
engine = None


@router.get("")
async def get_diagnostics():
    """Session counts by state, timers and geometry attempts per session."""
    if engine is None:
        return {"error": "Tracking engine not initialized"}
    return engine.get_diagnostics()


@router.get("/sessions/{session_id}")
async def get_session_diagnostics(session_id: str):
    """Diagnostics for a single session."""
    if engine is None:
        return {"error": "Tracking engine not initialized"}
    for s in engine.get_diagnostics()["sessions"]:
        if s["session_id"] == session_id:
            return s
    return {"error": "Session not found"}
