import uuid

from sqlalchemy import Column, Date, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from crm_inbox.database import Base


class Policy(Base):
    __tablename__ = "policies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False, index=True)
    agent_id = Column(Uuid, index=True)
    policy_type = Column(Text, nullable=False)  # ОСАГО, КАСКО, ...
    policy_series = Column(Text)
    policy_number = Column(Text)
    insurance_company = Column(Text)
    vehicle_model = Column(Text)
    vehicle_number = Column(Text)
    start_date = Column(Date)
    end_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, expiring_soon, expired, cancelled

    client = relationship("Client", back_populates="policies")
