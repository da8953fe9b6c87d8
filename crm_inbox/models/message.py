import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from crm_inbox.database import Base, utcnow


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("channel", "external_message_id", name="uq_messages_channel_external_id"),
        Index("ix_messages_user_created", "user_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False)  # owning agent
    manager_id = Column(Uuid)
    direction = Column(Text, nullable=False)  # in, out
    channel = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    message_type = Column(Text, nullable=False, default="text")
    media_url = Column(Text)
    media_type = Column(Text)
    is_internal = Column(Boolean, nullable=False, default=False)
    is_automated = Column(Boolean, nullable=False, default=False)
    is_read = Column(Boolean, nullable=False, default=False)
    delivery_status = Column(Text, nullable=False, default="pending")  # pending, sent, read, error
    external_message_id = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    client = relationship("Client", back_populates="messages")
