import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class PhoneNumber(Base):
    """A business number; ``phone_number_id`` is the provider id webhooks address."""

    __tablename__ = "phone_numbers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number_id = Column(Text, nullable=False, unique=True, index=True)
    display_phone_number = Column(Text)
    waba_account_id = Column(UUID(as_uuid=True), ForeignKey("waba_accounts.id"), nullable=False)
    active_bot_flow_id = Column(UUID(as_uuid=True), ForeignKey("bot_flows.id"))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    waba_account = relationship("WabaAccount", back_populates="phone_numbers")
    active_bot_flow = relationship("BotFlow")
