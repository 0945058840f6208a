import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False, index=True)
    name = Column(Text)
    email = Column(Text)
    is_subscribed = Column(Boolean, nullable=False, default=True)
    unsubscribe_reason = Column(Text)
    unsubscribed_at = Column(TIMESTAMP(timezone=True))
    contact_list_id = Column(UUID(as_uuid=True), ForeignKey("contact_lists.id"))
    previous_contact_list_id = Column(UUID(as_uuid=True), ForeignKey("contact_lists.id"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
