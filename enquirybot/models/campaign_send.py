import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class CampaignSend(Base):
    """One template message delivered by the campaign sender to one recipient."""

    __tablename__ = "campaign_sends"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    wamid = Column(Text, nullable=False, unique=True, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"))
    recipient_phone = Column(Text, nullable=False, index=True)
    phone_number_id = Column(Text, nullable=False)  # business number the send went out from
    status = Column(Text, nullable=False, default="sent")  # sent, delivered, read, failed
    failure_reason = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
