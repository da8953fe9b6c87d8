import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from crm_inbox.database import Base, JSONColumn, utcnow


class Client(Base):
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id = Column(Uuid, index=True)
    first_name = Column(Text, nullable=False, default="")
    last_name = Column(Text, nullable=False, default="")
    middle_name = Column(Text)
    phone = Column(Text, index=True)
    email = Column(Text)
    telegram_id = Column(Text)
    messenger_ids = Column(JSONColumn, nullable=False, default=dict)  # channel -> chat id for replies
    is_company = Column(Boolean, nullable=False, default=False)
    birth_date = Column(Date)
    is_archived = Column(Boolean, nullable=False, default=False)
    archive_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    messages = relationship("Message", back_populates="client")
    policies = relationship("Policy", back_populates="client")
    sales = relationship("Sale", back_populates="client")

    @property
    def full_name(self) -> str:
        """Russian order: last, first, middle."""
        parts = [self.last_name, self.first_name, self.middle_name]
        return " ".join(p for p in parts if p)
