from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from enquirybot.ws.manager import ALL_CHANNELS, ws_manager

router = APIRouter()


@router.websocket("/ws")
async def events_socket(websocket: WebSocket, recipient_id: str | None = None):
    """Push ``newMessage``/``messageStatusUpdate``/``campaignsUpdated`` events."""
    channel = recipient_id or ALL_CHANNELS
    await ws_manager.connect(channel, websocket)
    try:
        while True:
            # Inbound frames are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_manager.disconnect(channel, websocket)
