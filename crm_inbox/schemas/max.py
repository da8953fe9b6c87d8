from typing import Any, Optional

from pydantic import BaseModel


class MaxUser(BaseModel):
    user_id: int
    name: Optional[str] = None
    username: Optional[str] = None
    is_bot: bool = False


class MaxRecipient(BaseModel):
    chat_id: Optional[int] = None
    chat_type: Optional[str] = None  # dialog, chat
    user_id: Optional[int] = None


class MaxAttachment(BaseModel):
    type: str  # image, video, file, audio, sticker, ...
    payload: Optional[dict[str, Any]] = None
    url: Optional[str] = None

    @property
    def resolved_url(self) -> Optional[str]:
        return (self.payload or {}).get("url") or self.url


class MaxMessageBody(BaseModel):
    mid: Optional[str] = None
    seq: Optional[int] = None
    text: Optional[str] = None
    attachments: Optional[list[MaxAttachment]] = None


class MaxMessage(BaseModel):
    sender: Optional[MaxUser] = None
    recipient: Optional[MaxRecipient] = None
    timestamp: Optional[int] = None  # seconds
    body: Optional[MaxMessageBody] = None


class MaxUpdate(BaseModel):
    update_type: str  # message_created, message_callback, bot_started, ...
    timestamp: Optional[int] = None
    message: Optional[MaxMessage] = None
    chat_id: Optional[int] = None
