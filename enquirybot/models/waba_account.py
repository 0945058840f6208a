import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from enquirybot.database import Base
from enquirybot.timeutils import utcnow


class WabaAccount(Base):
    __tablename__ = "waba_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text)
    business_account_id = Column(Text, nullable=False)
    access_token = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    phone_numbers = relationship("PhoneNumber", back_populates="waba_account")
