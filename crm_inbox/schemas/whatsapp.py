from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WhatsAppMetadata(BaseModel):
    sender: Optional[str] = None  # push name
    timestamp: Optional[int] = None
    messageId: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id", "id"))
    remoteJid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("remoteJid", "remote_jid", "jid", "from"),
    )
    fromMe: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))


class WhatsAppWebhookBody(BaseModel):
    messageType: Optional[str] = "text"
    message: Optional[str] = None
    metadata: Optional[WhatsAppMetadata] = None
    mediaData: Optional[Any] = None


class WhatsAppWebhookRequest(BaseModel):
    body: WhatsAppWebhookBody
