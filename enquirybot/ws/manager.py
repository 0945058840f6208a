"""WebSocket broadcasting for dashboard clients.

Clients subscribe to one business number (``recipient_id``) or to every
number (``*``). Events are JSON frames ``{"event": ..., "data": ...}``.
"""

from fastapi import WebSocket

from enquirybot.logging_config import get_logger

logger = get_logger("ws")

ALL_CHANNELS = "*"


class ConnectionManager:
    def __init__(self) -> None:
        self.active: dict[str, set[WebSocket]] = {}

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active.setdefault(channel, set()).add(websocket)
        logger.info("WS connected", extra={"context": {"channel": channel, "total": self.connection_count(channel)}})

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        conns = self.active.get(channel)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                self.active.pop(channel, None)
        logger.info("WS disconnected", extra={"context": {"channel": channel, "total": self.connection_count(channel)}})

    def connection_count(self, channel: str | None = None) -> int:
        if channel is None:
            return sum(len(conns) for conns in self.active.values())
        return len(self.active.get(channel, set()))

    async def publish(self, event: str, payload: dict) -> None:
        channels = {ALL_CHANNELS}
        recipient_id = payload.get("recipientId")
        if recipient_id:
            channels.add(str(recipient_id))

        frame = {"event": event, "data": payload}
        for channel in channels:
            connections = list(self.active.get(channel, set()))
            stale: set[WebSocket] = set()
            for websocket in connections:
                try:
                    await websocket.send_json(frame)
                except Exception as exc:
                    logger.warning(
                        "WS send failed, dropping connection",
                        extra={"context": {"channel": channel, "error": str(exc)}},
                    )
                    stale.add(websocket)
            for websocket in stale:
                self.disconnect(channel, websocket)


ws_manager = ConnectionManager()
