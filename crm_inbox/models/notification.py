import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, Text, Uuid, text

from crm_inbox.database import Base, utcnow


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    title = Column(Text, nullable=False)
    message_template = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default="whatsapp")  # comma-separated, first one wins
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class NotificationTrigger(Base):
    __tablename__ = "notification_triggers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    event_type = Column(Text, nullable=False)  # birthday, policy_expiry, debt_reminder
    template_id = Column(Uuid, ForeignKey("notification_templates.id"), nullable=False)
    days_before = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (
        # one notice per policy for the lifetime of the policy
        Index(
            "uq_notification_logs_policy_scope",
            "client_id",
            "template_id",
            "policy_id",
            unique=True,
            postgresql_where=text("policy_id IS NOT NULL"),
            sqlite_where=text("policy_id IS NOT NULL"),
        ),
        # one notice per calendar day otherwise
        Index(
            "uq_notification_logs_day_scope",
            "client_id",
            "template_id",
            "sent_on",
            unique=True,
            postgresql_where=text("policy_id IS NULL"),
            sqlite_where=text("policy_id IS NULL"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    template_id = Column(Uuid, ForeignKey("notification_templates.id"))
    trigger_id = Column(Uuid, ForeignKey("notification_triggers.id"))
    policy_id = Column(Uuid, ForeignKey("policies.id"))
    channel = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    template_title = Column(Text)
    status = Column(Text, nullable=False, default="pending")
    source = Column(Text, nullable=False, default="manual")  # manual, scheduled
    error_message = Column(Text)
    external_message_id = Column(Text)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_on = Column(Date, nullable=False)
    updated_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))
