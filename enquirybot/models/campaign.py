import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    template_name = Column(Text)
    waba_account_id = Column(UUID(as_uuid=True), ForeignKey("waba_accounts.id"))
    status = Column(Text, nullable=False, default="draft")
    reply_count = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
