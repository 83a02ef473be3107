"""WebSocket endpoint streaming tracking frames."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from matatu_tracker.core.exceptions import NotFound

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
broadcaster = None
engine = None


@router.websocket("/ws/tracking/{session_id}")
async def tracking_ws(websocket: WebSocket, session_id: str) -> None:
    """Send the current frame, then every frame the session publishes."""
    await websocket.accept()

    if broadcaster is None or engine is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    try:
        frame = engine.snapshot(session_id)
    except NotFound:
        await websocket.close(code=4404, reason="Session not found")
        return

    queue = broadcaster.subscribe(session_id)
    try:
        await websocket.send_bytes(orjson.dumps({
            "type": "snapshot",
            "frame": frame.model_dump(mode="json"),
        }))
        while True:
            data = await queue.get()
            await websocket.send_bytes(data)
            if orjson.loads(data).get("type") == "closed":
                await websocket.close()
                break
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        broadcaster.unsubscribe(session_id, queue)
        await engine.viewer_left(session_id)
