from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from structlog import get_logger

logger = get_logger()
router = APIRouter(tags=["changes"])

@router.websocket("/ws")
async def change_feed(websocket: WebSocket):
    """Push change events to a connected listener. No handshake payload; inbound messages are ignored."""
    hub = websocket.app.state.hub
    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else None
    subscription = hub.connect(websocket.send_text, name=client)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect as e:
        logger.info("Change feed client went away", subscription_id=subscription.id, code=e.code)
    finally:
        hub.disconnect(subscription)
