import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base, JSONType
from enquirybot.timeutils import utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_message_id = Column(Text, nullable=False, unique=True, index=True)
    direction = Column(Text, nullable=False)  # incoming, outgoing
    customer_phone = Column(Text, nullable=False, index=True)
    recipient_id = Column(Text, nullable=False, index=True)
    message_type = Column(Text, nullable=False, default="text")
    body = Column(Text)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    media_id = Column(Text)
    media_type = Column(Text)
    media_url = Column(Text)
    interactive = Column(JSONType)

    context_message_id = Column(Text)
    context_from = Column(Text)
    reaction_emoji = Column(Text)
    reaction_message_id = Column(Text)

    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"))
    status = Column(Text)  # sent, delivered, read, failed
    failure_reason = Column(Text)
    is_system_generated = Column(Boolean, nullable=False, default=False)
    read = Column(Boolean, nullable=False, default=False)
