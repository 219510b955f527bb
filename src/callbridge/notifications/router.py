"""
WebSocket endpoint for agent consoles.
"""

from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from callbridge.notifications.fanout import NotificationFanout, ObserverLimitError
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["notifications"])


class WebSocketObserver:
    """Adapts a FastAPI WebSocket to the fan-out observer protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        await self._websocket.send_json(message)


@router.websocket("/ws/agents")
async def agent_notifications(websocket: WebSocket) -> None:
    fanout: NotificationFanout = websocket.app.state.fanout
    await websocket.accept()
    # Sent before registering so it never races the delivery task.
    await websocket.send_json({"type": "connected"})

    try:
        observer_id = fanout.register(WebSocketObserver(websocket))
    except ObserverLimitError:
        logger.warning("Rejecting agent console: observer limit reached")
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    try:
        # Inbound frames carry nothing; reading keeps the disconnect visible.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await fanout.unregister(observer_id)
