import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, UniqueConstraint, Uuid

from crm_inbox.database import Base, JSONColumn, utcnow


class ChannelSetting(Base):
    __tablename__ = "channel_settings"
    __table_args__ = (UniqueConstraint("user_id", "channel", name="uq_channel_settings_user_channel"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    channel = Column(Text, nullable=False)  # whatsapp, whatsapp_web, telegram, max, max_web, sms
    is_active = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="not_configured")  # connected, error, not_configured
    config = Column(JSONColumn, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
