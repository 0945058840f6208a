"""Normalizes provider webhook payloads into stored messages and buffered events."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import CampaignSend, Message
from enquirybot.schemas.webhook import (
    WebhookAck,
    WebhookContact,
    WebhookMedia,
    WebhookMessage,
    WebhookStatus,
    WebhookValue,
    WhatsAppWebhookPayload,
)
from enquirybot.services.attribution_service import attribute_campaign
from enquirybot.services.buffer_service import BufferedEvent, MessageBuffer, sender_key
from enquirybot.services.events import MESSAGE_STATUS_UPDATE, NEW_MESSAGE, EventPublisher
from enquirybot.services.media_service import MEDIA_MESSAGE_TYPES, store_inbound_media
from enquirybot.services.message_service import is_duplicate_message_id, save_incoming_message, serialize_message
from enquirybot.services.send_service import resolve_credentials
from enquirybot.services.whatsapp_service import WhatsAppClient, format_failure_reason
from enquirybot.timeutils import utcnow

logger = get_logger("ingest_service")

WHATSAPP_OBJECT = "whatsapp_business_account"
DIRECT_REPLY_TYPES = {"button", "interactive"}


@dataclass
class MessageContent:
    body: Optional[str] = None
    option_id: Optional[str] = None
    option_title: Optional[str] = None
    media: Optional[WebhookMedia] = None
    reaction_emoji: Optional[str] = None
    reaction_message_id: Optional[str] = None
    interactive: Optional[dict] = None


def extract_message_content(message: WebhookMessage) -> MessageContent:
    """Body text plus type-specific parts of an inbound message."""
    msg_type = message.type
    if msg_type == "text":
        return MessageContent(body=message.text.body if message.text else None)

    if msg_type == "reaction" and message.reaction:
        return MessageContent(
            body=message.reaction.emoji,
            reaction_emoji=message.reaction.emoji,
            reaction_message_id=message.reaction.message_id,
        )

    if msg_type == "interactive" and message.interactive:
        reply = message.interactive.button_reply or message.interactive.list_reply
        if reply is None:
            return MessageContent()
        return MessageContent(
            body=reply.title,
            option_id=reply.id,
            option_title=reply.title,
            interactive=message.interactive.model_dump(exclude_none=True),
        )

    if msg_type == "button" and message.button:
        return MessageContent(
            body=message.button.text,
            option_id=message.button.payload,
            option_title=message.button.text,
        )

    if msg_type in MEDIA_MESSAGE_TYPES:
        media = getattr(message, msg_type, None)
        if media is not None:
            return MessageContent(body=media.caption, media=media)

    return MessageContent()


def parse_provider_timestamp(value: Optional[str], default: datetime) -> datetime:
    if not value:
        return default
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return default


def _profile_name(contacts: list[WebhookContact], sender: str) -> Optional[str]:
    for contact in contacts:
        if contact.wa_id == sender and contact.profile:
            return contact.profile.name
    if contacts and contacts[0].profile:
        return contacts[0].profile.name
    return None


class WebhookIngestor:
    def __init__(
        self,
        db: Session,
        *,
        client: WhatsAppClient,
        publisher: EventPublisher,
        buffer: MessageBuffer,
        now_func: Callable = utcnow,
    ):
        self.db = db
        self.client = client
        self.publisher = publisher
        self.buffer = buffer
        self.now_func = now_func

    async def process_payload(self, payload: WhatsAppWebhookPayload) -> WebhookAck:
        ack = WebhookAck()
        for entry in payload.entry:
            for change in entry.changes:
                value = change.value
                if value is None:
                    continue
                await self._process_value(value, ack)
        return ack

    async def _process_value(self, value: WebhookValue, ack: WebhookAck) -> None:
        recipient_id = value.metadata.phone_number_id if value.metadata else None
        if not recipient_id:
            logger.warning("Webhook value without business number metadata, ignoring")
            return

        for message in value.messages:
            contact_name = _profile_name(value.contacts, message.sender)
            try:
                accepted = await self.process_inbound_message(
                    message, recipient_id=recipient_id, contact_name=contact_name
                )
            except Exception as exc:
                self.db.rollback()
                logger.error(
                    "Inbound message processing failed",
                    extra={"context": {"provider_message_id": message.id, "error": str(exc)}},
                    exc_info=True,
                )
                continue
            if accepted:
                ack.accepted_messages += 1
            else:
                ack.duplicates += 1

        for status in value.statuses:
            try:
                if await self.process_status(status, recipient_id=recipient_id):
                    ack.status_updates += 1
            except Exception as exc:
                self.db.rollback()
                logger.error(
                    "Status update processing failed",
                    extra={"context": {"wamid": status.id, "error": str(exc)}},
                    exc_info=True,
                )

    async def process_inbound_message(
        self,
        message: WebhookMessage,
        *,
        recipient_id: str,
        contact_name: Optional[str] = None,
    ) -> bool:
        """Store, broadcast and buffer one inbound message; False for a duplicate."""
        if is_duplicate_message_id(self.db, message.id):
            return False

        now = self.now_func()
        content = extract_message_content(message)
        customer_phone = message.sender
        context_message_id = message.context.id if message.context else None

        media_url = None
        if content.media is not None and content.media.id:
            media_url = await self._store_media(content.media, message.type, recipient_id)

        attribution = attribute_campaign(
            self.db,
            customer_phone=customer_phone,
            recipient_id=recipient_id,
            body=content.body,
            context_message_id=context_message_id,
            now=now,
        )
        campaign_id = attribution.campaign_id if attribution else None
        is_direct_reply = bool(attribution) and (attribution.is_direct_reply or message.type in DIRECT_REPLY_TYPES)

        record = Message(
            provider_message_id=message.id,
            customer_phone=customer_phone,
            recipient_id=recipient_id,
            message_type=message.type,
            body=content.body,
            timestamp=parse_provider_timestamp(message.timestamp, now),
            media_id=content.media.id if content.media else None,
            media_type=content.media.mime_type if content.media else None,
            media_url=media_url,
            interactive=content.interactive,
            context_message_id=context_message_id,
            context_from=message.context.sender if message.context else None,
            reaction_emoji=content.reaction_emoji,
            reaction_message_id=content.reaction_message_id,
            campaign_id=campaign_id,
            is_system_generated=False,
            read=False,
        )
        saved = save_incoming_message(self.db, record)
        if saved is None:
            return False

        logger.info(
            "Inbound message stored",
            extra={
                "context": {
                    "provider_message_id": message.id,
                    "customer_phone": customer_phone,
                    "recipient_id": recipient_id,
                    "type": message.type,
                    "campaign_id": str(campaign_id) if campaign_id else None,
                    "attribution": attribution.strategy.value if attribution else None,
                }
            },
        )
        await self.publisher.publish(
            NEW_MESSAGE,
            {"from": customer_phone, "recipientId": recipient_id, "message": serialize_message(saved)},
        )

        if content.reaction_emoji:
            # Reactions are stored and broadcast but never answer a bot prompt
            return True

        self.buffer.ingest(
            sender_key(customer_phone, recipient_id),
            BufferedEvent(
                provider_message_id=message.id,
                customer_phone=customer_phone,
                recipient_id=recipient_id,
                body=content.body,
                message_type=message.type,
                timestamp=saved.timestamp,
                option_id=content.option_id,
                option_title=content.option_title,
                contact_name=contact_name,
                campaign_id=campaign_id,
                is_direct_reply=is_direct_reply,
            ),
        )
        return True

    async def _store_media(self, media: WebhookMedia, message_type: str, recipient_id: str) -> Optional[str]:
        credentials = resolve_credentials(self.db, recipient_id)
        if not credentials.ok:
            logger.warning(
                "Cannot fetch media without credentials",
                extra={"context": {"media_id": media.id, "recipient_id": recipient_id}},
            )
            return None
        result = await store_inbound_media(
            self.client,
            media_id=media.id,
            mime_type=media.mime_type,
            file_name=media.filename,
            access_token=credentials.value.access_token,
            recipient_id=recipient_id,
        )
        if not result.ok:
            logger.warning(
                "Inbound media not stored",
                extra={"context": {"media_id": media.id, "type": message_type, **result.to_context()}},
            )
            return None
        return result.value

    async def process_status(self, status: WebhookStatus, *, recipient_id: str) -> bool:
        """Apply a delivery status to the message and campaign send it names."""
        failure_reason = None
        if status.status == "failed" and status.errors:
            error = status.errors[0]
            details = (error.error_data or {}).get("details") or error.message
            failure_reason = format_failure_reason(error.code, error.title, details)

        message = self.db.query(Message).filter(Message.provider_message_id == status.id).first()
        send = self.db.query(CampaignSend).filter(CampaignSend.wamid == status.id).first()
        if message is None and send is None:
            logger.info("Status for unknown message", extra={"context": {"wamid": status.id, "status": status.status}})
            return False

        if message is not None:
            message.status = status.status
            if failure_reason:
                message.failure_reason = failure_reason
        if send is not None:
            send.status = status.status
            send.updated_at = self.now_func()
            if failure_reason:
                send.failure_reason = failure_reason
        self.db.commit()

        logger.info(
            "Message status updated",
            extra={"context": {"wamid": status.id, "status": status.status, "failure_reason": failure_reason}},
        )
        await self.publisher.publish(
            MESSAGE_STATUS_UPDATE,
            {
                "wamid": status.id,
                "status": status.status,
                "failureReason": failure_reason,
                "from": recipient_id,
                "recipientId": recipient_id,
            },
        )
        return True
