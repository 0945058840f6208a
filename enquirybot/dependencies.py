"""Process-wide collaborators, exposed as FastAPI dependencies."""

from enquirybot.database import SessionLocal
from enquirybot.logging_config import get_logger
from enquirybot.services.buffer_service import BufferedTurn, MessageBuffer
from enquirybot.services.dispatch_service import dispatch_turn
from enquirybot.services.events import EventPublisher
from enquirybot.services.whatsapp_service import WhatsAppClient
from enquirybot.ws.manager import ws_manager

logger = get_logger("dependencies")

_whatsapp_client = WhatsAppClient()


async def _dispatch_buffered_turn(turn: BufferedTurn) -> None:
    db = SessionLocal()
    try:
        await dispatch_turn(db, turn, client=_whatsapp_client, publisher=ws_manager)
    finally:
        db.close()


_message_buffer = MessageBuffer(_dispatch_buffered_turn)


def get_whatsapp_client() -> WhatsAppClient:
    return _whatsapp_client


def get_publisher() -> EventPublisher:
    return ws_manager


def get_message_buffer() -> MessageBuffer:
    return _message_buffer
