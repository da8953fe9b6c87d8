"""Normalize provider webhook payloads into Message rows.

Every provider payload is first reduced to an InboundEvent; from there the
client lookup, dedup and insert path is the same for all channels.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import ChannelSetting, Client, Message
from crm_inbox.schemas.max import MaxUpdate
from crm_inbox.schemas.telegram import TelegramUpdate
from crm_inbox.schemas.whatsapp import WhatsAppWebhookBody

logger = get_logger("inbound_service")

INGESTED_MAX_UPDATES = {"message_created", "message_callback"}

# MAX attachment type -> (message_type, default mime)
MAX_ATTACHMENT_TYPES = {
    "image": ("photo", "image/jpeg"),
    "video": ("video", "video/mp4"),
    "file": ("document", "application/octet-stream"),
    "audio": ("audio", "audio/mpeg"),
    "sticker": ("sticker", "image/webp"),
}

WHATSAPP_MEDIA_ALIASES = {
    "image": "photo",
    "imagemessage": "photo",
    "photo": "photo",
    "video": "video",
    "videomessage": "video",
    "document": "document",
    "documentmessage": "document",
    "file": "document",
    "audio": "audio",
    "audiomessage": "audio",
    "ptt": "voice",
    "voice": "voice",
    "sticker": "sticker",
    "stickermessage": "sticker",
}

CHANNEL_LABELS = {"max": "MAX", "telegram": "Telegram", "whatsapp": "WhatsApp"}


@dataclass
class InboundAttachment:
    kind: str  # photo, video, document, audio, voice, sticker
    url: Optional[str] = None
    mime: Optional[str] = None


@dataclass
class InboundEvent:
    channel: str
    sender_external_id: str
    provider_message_id: str
    text: str = ""
    sender_name: Optional[str] = None
    chat_id: Optional[str] = None
    attachments: List[InboundAttachment] = field(default_factory=list)
    timestamp: Optional[datetime] = None

    @property
    def external_message_id(self) -> str:
        return f"{self.channel}_{self.sender_external_id}_{self.provider_message_id}"


def _from_unix(seconds: Optional[int]) -> datetime:
    if not seconds:
        return utcnow()
    # some gateways send milliseconds
    if seconds > 10**11:
        seconds = seconds / 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def event_from_max(update: MaxUpdate) -> Optional[InboundEvent]:
    if update.update_type not in INGESTED_MAX_UPDATES:
        return None
    message = update.message
    if not message or not message.sender or not message.body or not message.body.mid:
        return None

    attachments = []
    for att in message.body.attachments or []:
        kind, default_mime = MAX_ATTACHMENT_TYPES.get(att.type, ("document", "application/octet-stream"))
        mime = (att.payload or {}).get("mime_type") or default_mime
        attachments.append(InboundAttachment(kind=kind, url=att.resolved_url, mime=mime))

    chat_id = None
    if message.recipient and message.recipient.chat_id is not None:
        chat_id = str(message.recipient.chat_id)
    elif update.chat_id is not None:
        chat_id = str(update.chat_id)

    return InboundEvent(
        channel="max",
        sender_external_id=str(message.sender.user_id),
        sender_name=message.sender.name,
        provider_message_id=message.body.mid,
        text=message.body.text or "",
        chat_id=chat_id,
        attachments=attachments,
        timestamp=_from_unix(message.timestamp or update.timestamp),
    )


def event_from_telegram(update: TelegramUpdate) -> Optional[InboundEvent]:
    message = update.message
    if not message or not message.from_user or message.from_user.is_bot:
        return None

    attachments = []
    if message.photo:
        # sizes are ascending, keep the largest
        attachments.append(InboundAttachment(kind="photo", url=f"tg_file:{message.photo[-1].file_id}", mime="image/jpeg"))
    for kind in ("video", "document", "audio", "voice", "sticker"):
        item = getattr(message, kind)
        if item is not None:
            attachments.append(InboundAttachment(kind=kind, url=f"tg_file:{item.file_id}", mime=item.mime_type))

    user = message.from_user
    name = " ".join(p for p in (user.first_name, user.last_name) if p)
    return InboundEvent(
        channel="telegram",
        sender_external_id=str(user.id),
        sender_name=name or user.username,
        provider_message_id=str(message.message_id),
        text=message.text or message.caption or "",
        chat_id=str(message.chat.id),
        attachments=attachments,
        timestamp=_from_unix(message.date),
    )


def _jid_to_phone(jid: Optional[str]) -> Optional[str]:
    if not jid:
        return None
    digits = "".join(ch for ch in jid.split("@", 1)[0] if ch.isdigit())
    return digits or None


def event_from_whatsapp(body: WhatsAppWebhookBody) -> Optional[InboundEvent]:
    metadata = body.metadata
    if not metadata or metadata.fromMe:
        return None
    phone = _jid_to_phone(metadata.remoteJid)
    if not phone:
        return None

    attachments = []
    media = body.mediaData if isinstance(body.mediaData, dict) else None
    raw_type = (body.messageType or "text").strip().lower()
    if media or raw_type != "text":
        media = media or {}
        kind = WHATSAPP_MEDIA_ALIASES.get(raw_type) or WHATSAPP_MEDIA_ALIASES.get(str(media.get("type", "")).lower())
        mime = media.get("mimetype") or media.get("mime")
        if kind == "audio" and media.get("ptt"):
            kind = "voice"
        if kind is None and isinstance(mime, str):
            kind = "photo" if mime.startswith("image/") else "document"
        if kind:
            attachments.append(InboundAttachment(kind=kind, url=media.get("url"), mime=mime))

    text = body.message or ""
    if not text and media:
        text = media.get("caption") or ""

    provider_id = metadata.messageId or f"{phone}:{metadata.timestamp or int(utcnow().timestamp())}"
    return InboundEvent(
        channel="whatsapp",
        sender_external_id=phone,
        sender_name=metadata.sender,
        provider_message_id=provider_id,
        text=text,
        chat_id=metadata.remoteJid,
        attachments=attachments,
        timestamp=_from_unix(metadata.timestamp),
    )


def primary_media(event: InboundEvent) -> Tuple[str, Optional[str], Optional[str]]:
    """Return (message_type, media_url, media_type) for the first attachment."""
    if not event.attachments:
        return "text", None, None
    first = event.attachments[0]
    return first.kind, first.url, first.mime


def resolve_max_agent(db: Session) -> Optional[UUID]:
    """MAX bot webhooks carry no agent id; route to the agent with an active MAX bot."""
    setting = (
        db.query(ChannelSetting)
        .filter(ChannelSetting.channel == "max", ChannelSetting.is_active.is_(True))
        .order_by(ChannelSetting.created_at)
        .first()
    )
    return setting.user_id if setting else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_client(db: Session, user_id: UUID, event: InboundEvent) -> Optional[Client]:
    prefix = f"{event.channel}_{event.sender_external_id}_"
    previous = (
        db.query(Message)
        .filter(
            Message.user_id == user_id,
            Message.channel == event.channel,
            Message.direction == "in",
            Message.external_message_id.like(_escape_like(prefix) + "%", escape="\\"),
        )
        .order_by(Message.created_at.desc())
        .first()
    )
    if previous:
        return db.query(Client).filter(Client.id == previous.client_id).first()

    candidates = [f"{event.channel}_{event.sender_external_id}"]
    if event.channel == "whatsapp":
        candidates += [event.sender_external_id, f"+{event.sender_external_id}"]
    query = db.query(Client).filter(Client.agent_id == user_id)
    client = query.filter(Client.phone.in_(candidates)).first()
    if client is None and event.channel == "telegram":
        client = query.filter(Client.telegram_id == event.sender_external_id).first()
    return client


def create_placeholder_client(db: Session, user_id: UUID, event: InboundEvent) -> Client:
    name_parts = (event.sender_name or "").split()
    label = CHANNEL_LABELS.get(event.channel, event.channel)
    phone = f"+{event.sender_external_id}" if event.channel == "whatsapp" else f"{event.channel}_{event.sender_external_id}"

    client = Client(
        agent_id=user_id,
        first_name=name_parts[0] if name_parts else f"{label} User",
        last_name=" ".join(name_parts[1:]) if len(name_parts) > 1 else event.sender_external_id,
        phone=phone,
        telegram_id=event.sender_external_id if event.channel == "telegram" else None,
        messenger_ids={},
        created_at=utcnow(),
    )
    db.add(client)
    db.flush()
    logger.info(
        "Placeholder client created",
        extra={"context": {"client_id": str(client.id), "channel": event.channel, "sender": event.sender_external_id}},
    )
    return client


def _remember_chat_id(client: Client, event: InboundEvent) -> None:
    if not event.chat_id:
        return
    ids = dict(client.messenger_ids or {})
    if ids.get(event.channel) != event.chat_id:
        ids[event.channel] = event.chat_id
        client.messenger_ids = ids


def is_duplicate(db: Session, event: InboundEvent) -> bool:
    return (
        db.query(Message.id)
        .filter(Message.channel == event.channel, Message.external_message_id == event.external_message_id)
        .first()
        is not None
    )


def ingest_inbound(db: Session, user_id: UUID, event: InboundEvent) -> Optional[Message]:
    """Persist one inbound event. Returns None when it was already ingested.

    Insert, un-archive and client creation are independent steps; a failure
    after the insert does not undo it.
    """
    log_context = {
        "user_id": str(user_id),
        "channel": event.channel,
        "external_message_id": event.external_message_id,
    }

    if is_duplicate(db, event):
        logger.info("Duplicate inbound message skipped", extra={"context": log_context})
        return None

    client = find_client(db, user_id, event) or create_placeholder_client(db, user_id, event)
    _remember_chat_id(client, event)

    message_type, media_url, media_type = primary_media(event)
    message = Message(
        client_id=client.id,
        user_id=user_id,
        direction="in",
        channel=event.channel,
        content=event.text or f"[{message_type}]",
        message_type=message_type,
        media_url=media_url,
        media_type=media_type,
        is_read=False,
        delivery_status="sent",
        external_message_id=event.external_message_id,
        created_at=event.timestamp or utcnow(),
    )
    db.add(message)
    try:
        db.commit()
    except IntegrityError:
        # concurrent delivery of the same update won the unique index
        db.rollback()
        logger.info("Duplicate inbound message lost insert race", extra={"context": log_context})
        return None

    logger.info(
        "Inbound message stored",
        extra={"context": {**log_context, "client_id": str(client.id), "message_type": message_type}},
    )

    unarchive_client(db, client)
    return message


def unarchive_client(db: Session, client: Client) -> None:
    """A new inbound message pulls an archived chat back into the inbox."""
    if not client.is_archived:
        return
    try:
        client.is_archived = False
        client.archive_reason = None
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to unarchive client: {e}", extra={"context": {"client_id": str(client.id)}})
