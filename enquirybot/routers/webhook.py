from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from enquirybot.config import settings
from enquirybot.database import get_db
from enquirybot.dependencies import get_message_buffer, get_publisher, get_whatsapp_client
from enquirybot.logging_config import get_logger
from enquirybot.schemas.webhook import WebhookAck, WhatsAppWebhookPayload
from enquirybot.services.buffer_service import MessageBuffer
from enquirybot.services.events import EventPublisher
from enquirybot.services.ingest_service import WHATSAPP_OBJECT, WebhookIngestor
from enquirybot.services.whatsapp_service import WhatsAppClient

logger = get_logger("webhook")

router = APIRouter()


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the token matches."""
    if mode == "subscribe" and settings.whatsapp_verify_token and token == settings.whatsapp_verify_token:
        logger.info("Webhook verified")
        return challenge or ""
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    body: Any = Body(...),
    db: Session = Depends(get_db),
    client: WhatsAppClient = Depends(get_whatsapp_client),
    publisher: EventPublisher = Depends(get_publisher),
    buffer: MessageBuffer = Depends(get_message_buffer),
):
    """Receive provider messages and status callbacks."""
    if not isinstance(body, dict) or body.get("object") != WHATSAPP_OBJECT:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unsupported webhook object")

    try:
        payload = WhatsAppWebhookPayload.model_validate(body)
    except ValidationError as exc:
        logger.warning("Malformed webhook payload", extra={"context": {"errors": exc.errors(include_url=False)}})
        return WebhookAck(success=False)

    ingestor = WebhookIngestor(db, client=client, publisher=publisher, buffer=buffer)
    try:
        return await ingestor.process_payload(payload)
    except Exception as exc:
        # The provider retries anything but a 200, which would only duplicate work
        db.rollback()
        logger.error("Webhook processing failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return WebhookAck(success=False)
