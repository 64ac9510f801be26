from __future__ import annotations

from fastapi import APIRouter, Depends, WebSocket

from reqpulse.api.deps import get_observability
from reqpulse.observability.broadcaster import WebSocketSubscriber
from reqpulse.runtime import Observability


router = APIRouter(tags=["dashboard"])


@router.websocket("/ws/dashboard")
async def dashboard_stream(websocket: WebSocket, obs: Observability = Depends(get_observability)) -> None:
    await websocket.accept()
    subscriber = WebSocketSubscriber(websocket)
    obs.broadcaster.subscribe(subscriber)
    try:
        # Inbound frames are ignored; we only wait for the client to leave.
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
    finally:
        obs.broadcaster.unsubscribe(subscriber)
