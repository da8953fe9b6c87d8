from sqlalchemy import Boolean, Column, Date, Text, Uuid

from crm_inbox.database import Base, JSONColumn


class AgentSettings(Base):
    __tablename__ = "agent_settings"

    user_id = Column(Uuid, primary_key=True)
    notification_test_mode = Column(Boolean, nullable=False, default=True)
    auto_process_time = Column(Text, nullable=False, default="09:00")
    auto_process_days = Column(JSONColumn, nullable=False, default=lambda: [1, 2, 3, 4, 5])  # ISO weekdays
    last_auto_run_date = Column(Date)
