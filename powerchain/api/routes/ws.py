"""WebSocket endpoint for real-time orchestration events."""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from powerchain.core.websocket import event_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/events")
async def events_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time events.

    Events sent:
    - cascade-progress: A cascade step started or finished
    - cascade-complete: A cascade finished successfully
    - cascade-error: A cascade failed
    - status-change: A node status was persisted
    - auto-shutdown: The inactivity monitor stopped an idle node
    """
    await event_broadcaster.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        event_broadcaster.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        event_broadcaster.disconnect(websocket)
