from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enquirybot.logging_config import get_logger
from enquirybot.models import Message
from enquirybot.timeutils import ensure_timezone, utcnow

logger = get_logger("message_service")

STUCK_BUTTON_IDS = {"stuck_continue", "stuck_end"}


def is_duplicate_message_id(db: Session, provider_message_id: str | None) -> bool:
    if not provider_message_id:
        return False
    exists = db.query(Message.id).filter(Message.provider_message_id == provider_message_id).first()
    if exists:
        logger.info(
            "Duplicate provider message id",
            extra={"context": {"provider_message_id": provider_message_id}},
        )
        return True
    return False


def save_incoming_message(db: Session, message: Message) -> Message | None:
    """Persist an inbound message; returns None when another writer got there first."""
    message.direction = "incoming"
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Duplicate provider message id on insert",
            extra={"context": {"provider_message_id": message.provider_message_id}},
        )
        return None
    db.refresh(message)
    return message


def save_outgoing_message(
    db: Session,
    *,
    provider_message_id: str,
    customer_phone: str,
    recipient_id: str,
    body: str,
    message_type: str = "text",
    interactive: Optional[dict] = None,
    is_system_generated: bool = False,
    context_message_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Message:
    message = Message(
        provider_message_id=provider_message_id,
        direction="outgoing",
        customer_phone=customer_phone,
        recipient_id=recipient_id,
        body=body,
        message_type=message_type,
        interactive=interactive,
        is_system_generated=is_system_generated,
        context_message_id=context_message_id,
        status="sent",
        read=True,
        timestamp=timestamp or utcnow(),
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_recent_outgoing(db: Session, customer_phone: str, recipient_id: str, limit: int = 20) -> list[Message]:
    return (
        db.query(Message)
        .filter(
            Message.customer_phone == customer_phone,
            Message.recipient_id == recipient_id,
            Message.direction == "outgoing",
        )
        .order_by(Message.timestamp.desc())
        .limit(limit)
        .all()
    )


def count_incoming_for_campaign(db: Session, customer_phone: str, campaign_id) -> int:
    return (
        db.query(Message)
        .filter(
            Message.customer_phone == customer_phone,
            Message.direction == "incoming",
            Message.campaign_id == campaign_id,
        )
        .count()
    )


def is_stuck_prompt(message: Message) -> bool:
    interactive = message.interactive or {}
    button_ids = {button.get("id") for button in interactive.get("buttons") or []}
    return bool(button_ids & STUCK_BUTTON_IDS)


def serialize_message(message: Message) -> dict:
    timestamp = ensure_timezone(message.timestamp)
    return {
        "id": str(message.id) if message.id else None,
        "messageId": message.provider_message_id,
        "direction": message.direction,
        "from": message.customer_phone,
        "recipientId": message.recipient_id,
        "type": message.message_type,
        "body": message.body,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "mediaId": message.media_id,
        "mediaType": message.media_type,
        "mediaUrl": message.media_url,
        "interactive": message.interactive,
        "context": (
            {"id": message.context_message_id, "from": message.context_from}
            if message.context_message_id
            else None
        ),
        "reaction": (
            {"emoji": message.reaction_emoji, "messageId": message.reaction_message_id}
            if message.reaction_emoji
            else None
        ),
        "campaignId": str(message.campaign_id) if message.campaign_id else None,
        "status": message.status,
        "failureReason": message.failure_reason,
        "isSystemGenerated": message.is_system_generated,
    }
