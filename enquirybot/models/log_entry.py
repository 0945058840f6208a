import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class LogEntry(Base):
    """Operator-visible event log."""

    __tablename__ = "logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    level = Column(Text, nullable=False, default="info")  # info, error, success
    message = Column(Text, nullable=False)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
