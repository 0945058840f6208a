import uuid

from sqlalchemy import Boolean, Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base, JSONType
from enquirybot.timeutils import utcnow


class Enquiry(Base):
    __tablename__ = "enquiries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_phone = Column(Text, nullable=False, index=True)
    recipient_id = Column(Text, nullable=False, index=True)
    conversation_state = Column(Text)  # node key or END

    name = Column(Text)
    email = Column(Text)
    budget = Column(Text)
    bedrooms = Column(Text)
    project_name = Column(Text)
    page_url = Column(Text)
    extra_fields = Column(JSONType, nullable=False, default=dict)

    language = Column(Text, nullable=False, default="en")
    status = Column(Text, nullable=False, default="open")  # open, handover, closed
    handover_reason = Column(Text)
    entry_source = Column(Text)
    review_status = Column(Text)  # PENDING, RECEIVED
    review_rating = Column(Integer)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, index=True)
    ended_at = Column(TIMESTAMP(timezone=True))
    last_node_sent_at = Column(TIMESTAMP(timezone=True))
    last_stuck_follow_up_sent_at = Column(TIMESTAMP(timezone=True))

    end_message_sent = Column(Boolean, nullable=False, default=False)
    node_follow_up_sent = Column(Boolean, nullable=False, default=False)
    completion_follow_up_sent = Column(Boolean, nullable=False, default=False)
    skip_name = Column(Boolean, nullable=False, default=False)
    skip_email = Column(Boolean, nullable=False, default=False)
    needs_immediate_attention = Column(Boolean, nullable=False, default=False)
    agent_contacted = Column(Boolean)
