from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    user_id: Optional[UUID] = None
    manager_id: Optional[UUID] = None
    direction: str
    channel: str
    content: str
    message_type: str = "text"
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    is_internal: bool = False
    is_automated: bool = False
    is_read: bool = False
    delivery_status: str
    created_at: datetime


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    client_id: UUID
    client_name: str
    client_phone: Optional[str] = None
    last_message: str
    last_message_at: Optional[datetime] = None
    last_channel: Optional[str] = None
    unread_count: int = 0
    manager_id: Optional[UUID] = None
    last_is_automated: bool = False


class ConversationsResponse(BaseModel):
    total_unread: int
    conversations: list[ConversationOut]


class SendMessageRequest(BaseModel):
    client_id: UUID
    content: str = Field(min_length=1)
    channel: str = "whatsapp"
    is_internal: bool = False
    media_url: Optional[str] = None
    media_type: Optional[str] = None


class SendMessageResponse(BaseModel):
    success: bool
    message: Optional[MessageOut] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class MarkReadResponse(BaseModel):
    success: bool
    updated: int


class TransferChatRequest(BaseModel):
    to_manager_id: UUID
    from_name: str
    to_name: str
