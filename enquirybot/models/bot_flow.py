import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class BotFlow(Base):
    __tablename__ = "bot_flows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    waba_account_id = Column(UUID(as_uuid=True), ForeignKey("waba_accounts.id"))
    start_node_key = Column(Text)

    completion_follow_up_enabled = Column(Boolean, nullable=False, default=False)
    completion_follow_up_delay = Column(Integer)  # minutes
    completion_follow_up_message = Column(Text)
    completion_follow_up_yes_node_key = Column(Text)
    completion_follow_up_no_node_key = Column(Text)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    nodes = relationship("BotNode", back_populates="flow", cascade="all, delete-orphan")
