"""WebSocket broadcaster for real-time orchestration events."""
import itertools
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Fans events out to every connected WebSocket client.

    Delivery is best-effort: a client that fails a send is dropped, and
    ``broadcast`` never raises to the caller.
    """

    def __init__(self):
        self.connections: set[WebSocket] = set()
        self._ids = itertools.count(1)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept connection and register it for events."""
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"WebSocket connected ({len(self.connections)} clients)")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove connection on disconnect."""
        self.connections.discard(websocket)
        logger.info(f"WebSocket disconnected ({len(self.connections)} clients)")

    async def broadcast(self, event: str, data: dict[str, Any]) -> None:
        """Send ``{"event", "data", "id"}`` to all clients."""
        message = {"event": event, "data": data, "id": next(self._ids)}

        dead_connections = []
        for ws in list(self.connections):
            try:
                await ws.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send {event} to WebSocket: {e}")
                dead_connections.append(ws)

        for ws in dead_connections:
            self.connections.discard(ws)

    def get_connection_count(self) -> int:
        return len(self.connections)


# Global instance
event_broadcaster = EventBroadcaster()
