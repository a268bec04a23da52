"""WebSocket endpoint streaming job events to a connected owner."""

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from genflow.services.events import EventPublisher

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["events"])


@router.websocket("/events")
async def job_events(websocket: WebSocket, owner: str = Query(..., min_length=1)):
    """Register the connection for owner's job events until it closes.

    Inbound messages are ignored except "ping", answered with "pong".
    """
    publisher: EventPublisher = websocket.app.state.publisher

    await websocket.accept()
    publisher.connect(owner, websocket)
    logger.info("events.client_connected", owner=owner)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info("events.client_disconnected", owner=owner)
    finally:
        publisher.disconnect(owner, websocket)
