import uuid

from sqlalchemy import Column, Date, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import relationship

from crm_inbox.database import Base


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False, index=True)
    agent_id = Column(Uuid, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    debt_status = Column(Text, nullable=False, default="paid")  # paid, unpaid
    installment_due_date = Column(Date)

    client = relationship("Client", back_populates="sales")

    @property
    def debt_amount(self):
        return (self.total_amount or 0) - (self.amount_paid or 0)
