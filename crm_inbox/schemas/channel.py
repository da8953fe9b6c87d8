from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ChannelSettingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel: str
    is_active: bool
    status: str
    config: dict[str, Any]
    updated_at: Optional[datetime] = None


class ChannelUpsertRequest(BaseModel):
    is_active: Optional[bool] = None
    status: Optional[str] = None
    config: Optional[dict[str, Any]] = None


class SessionCheckResponse(BaseModel):
    valid: bool
    status: str
    reason: Optional[str] = None
    session_expired: bool = False
    not_configured: bool = False


class TelegramSyncRequest(BaseModel):
    action: Literal["backfill", "poll", "check_read"]
    client_id: Optional[UUID] = None
    limit: int = Field(default=50, ge=1, le=500)


class TelegramSyncResponse(BaseModel):
    action: str
    synced: int = 0
    skipped: int = 0
    clients_checked: int = 0
    read_updated: int = 0
    notifications_read: int = 0
