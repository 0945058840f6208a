from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from enquirybot.config import settings
from enquirybot.logging_config import get_logger
from enquirybot.models import CampaignSend

logger = get_logger("attribution_service")

CAMPAIGN_KEYWORDS = [
    "yes, i am interested",
    "not interested",
    "stop",
    "subscribe",
    "نعم، مهتم",
]
SUCCESSFUL_SEND_STATUSES = ("sent", "delivered", "read")


class AttributionStrategy(str, Enum):
    CONTEXT = "context"
    KEYWORD = "keyword"
    RECENT = "recent"


@dataclass
class Attribution:
    campaign_id: UUID
    strategy: AttributionStrategy
    is_direct_reply: bool
    campaign_send_id: Optional[UUID] = None


def contains_campaign_keyword(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in CAMPAIGN_KEYWORDS)


def looks_like_web_enquiry(text: str | None) -> bool:
    return "http" in (text or "").lower()


def _latest_successful_send(
    db: Session,
    customer_phone: str,
    recipient_id: str,
    since: datetime,
) -> CampaignSend | None:
    return (
        db.query(CampaignSend)
        .filter(
            CampaignSend.recipient_phone == customer_phone,
            CampaignSend.phone_number_id == recipient_id,
            CampaignSend.status.in_(SUCCESSFUL_SEND_STATUSES),
            CampaignSend.sent_at >= since,
        )
        .order_by(CampaignSend.sent_at.desc())
        .first()
    )


def attribute_campaign(
    db: Session,
    *,
    customer_phone: str,
    recipient_id: str,
    body: str | None,
    context_message_id: str | None,
    now: datetime,
) -> Attribution | None:
    """Credit an inbound message to the campaign send that plausibly caused it.

    Strategies run in decreasing confidence and the first hit wins: a quoted
    campaign message, then a keyword reply within the keyword window, then
    plain recency within the shorter implicit window (skipped for messages
    that carry a URL, which are usually fresh web-form enquiries).
    """
    if context_message_id:
        send = db.query(CampaignSend).filter(CampaignSend.wamid == context_message_id).first()
        if send:
            return Attribution(
                campaign_id=send.campaign_id,
                strategy=AttributionStrategy.CONTEXT,
                is_direct_reply=True,
                campaign_send_id=send.id,
            )

    if contains_campaign_keyword(body):
        since = now - timedelta(days=settings.keyword_lookback_days)
        send = _latest_successful_send(db, customer_phone, recipient_id, since)
        if send:
            return Attribution(
                campaign_id=send.campaign_id,
                strategy=AttributionStrategy.KEYWORD,
                is_direct_reply=False,
                campaign_send_id=send.id,
            )

    if looks_like_web_enquiry(body):
        return None

    since = now - timedelta(hours=settings.implicit_lookback_hours)
    send = _latest_successful_send(db, customer_phone, recipient_id, since)
    if send:
        return Attribution(
            campaign_id=send.campaign_id,
            strategy=AttributionStrategy.RECENT,
            is_direct_reply=False,
            campaign_send_id=send.id,
        )
    return None
