import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from enquirybot.database import Base, JSONType


class BotNode(Base):
    __tablename__ = "bot_nodes"
    __table_args__ = (UniqueConstraint("bot_flow_id", "node_key", name="uq_bot_nodes_flow_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_flow_id = Column(UUID(as_uuid=True), ForeignKey("bot_flows.id"), nullable=False)
    node_key = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")  # text, buttons, list
    message_text = Column(Text, nullable=False, default="")
    save_to_field = Column(Text)
    next_node_key = Column(Text)

    # [{"title": ..., "next_node_key": ...}]
    buttons = Column(JSONType, nullable=False, default=list)
    list_button_text = Column(Text)
    # [{"title": ..., "rows": [{"title": ..., "description": ..., "next_node_key": ...}]}]
    list_sections = Column(JSONType, nullable=False, default=list)

    follow_up_enabled = Column(Boolean, nullable=False, default=False)
    follow_up_delay = Column(Integer)  # minutes
    follow_up_message = Column(Text)

    flow = relationship("BotFlow", back_populates="nodes")
