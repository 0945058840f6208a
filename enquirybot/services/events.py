from typing import Protocol

NEW_MESSAGE = "newMessage"
MESSAGE_STATUS_UPDATE = "messageStatusUpdate"
CAMPAIGNS_UPDATED = "campaignsUpdated"


class EventPublisher(Protocol):
    """Publisher of ``{event-name, payload}`` pairs to real-time subscribers."""

    async def publish(self, event: str, payload: dict) -> None: ...


class NullPublisher:
    """Publisher that drops every event."""

    async def publish(self, event: str, payload: dict) -> None:
        return None
