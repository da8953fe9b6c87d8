from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from crm_inbox.services.state_machine import NotificationStatus


class NotificationLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    template_id: Optional[UUID] = None
    trigger_id: Optional[UUID] = None
    policy_id: Optional[UUID] = None
    channel: str
    message: str
    template_title: Optional[str] = None
    status: str
    source: str
    error_message: Optional[str] = None
    external_message_id: Optional[str] = None
    sent_at: datetime
    read_at: Optional[datetime] = None


class StatusUpdateRequest(BaseModel):
    status: NotificationStatus
    external_message_id: Optional[str] = None
    error_message: Optional[str] = None


class DeliverResponse(BaseModel):
    sent: int


class ReadStatusResponse(BaseModel):
    updated: int
