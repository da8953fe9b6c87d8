"""Pull chats of a personal Telegram account into the inbox.

A ``user_api`` channel has no webhook: inbound messages are fetched over
MTProto and fed through the same ``ingest_inbound`` path as provider
webhooks. Outbound read receipts come from the dialog's
``read_outbox_max_id``.
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session
from telethon import TelegramClient, functions, types

from crm_inbox.logging_config import get_logger
from crm_inbox.models import Client, Message
from crm_inbox.services.bridges.telegram import user_client
from crm_inbox.services.channel_config import TelegramConfig
from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.inbound_service import InboundAttachment, InboundEvent, ingest_inbound
from crm_inbox.services.notification_log_service import check_read_status

logger = get_logger("telegram_sync_service")

OUTBOUND_PREFIX = "telegram_out_"

# checked in order: stickers, voice notes and videos are documents too
MEDIA_KINDS = ("photo", "sticker", "voice", "audio", "video", "document")


class TelegramSyncError(Exception):
    """The account could not be reached (bad credentials, revoked session)."""


@dataclass
class SyncStats:
    synced: int = 0
    skipped: int = 0
    clients_checked: int = 0
    read_updated: int = 0
    notifications_read: int = 0
    stored: List[Message] = field(default_factory=list)


def normalize_phone(phone: Optional[str]) -> str:
    # placeholder clients carry "telegram_<id>" style keys, not numbers
    if re.search(r"[A-Za-z]", phone or ""):
        return ""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    return digits


def media_kind(message) -> Optional[str]:
    for kind in MEDIA_KINDS:
        if getattr(message, kind, None):
            return kind
    return None


def message_to_event(message, peer) -> Optional[InboundEvent]:
    """Incoming Telethon message -> InboundEvent; None for outgoing or empty ones."""
    if message.out or not message.id:
        return None

    kind = media_kind(message)
    text = message.message or ""
    if not text and kind is None:
        return None

    attachments = []
    if kind is not None:
        file = getattr(message, "file", None)
        attachments.append(
            InboundAttachment(kind=kind, url=f"tg_msg:{peer.id}:{message.id}", mime=getattr(file, "mime_type", None))
        )

    name = " ".join(p for p in (getattr(peer, "first_name", None), getattr(peer, "last_name", None)) if p)
    return InboundEvent(
        channel="telegram",
        sender_external_id=str(peer.id),
        sender_name=name or getattr(peer, "username", None),
        provider_message_id=str(message.id),
        text=text,
        chat_id=str(peer.id),
        attachments=attachments,
        timestamp=message.date,
    )


def outbound_telegram_id(message: Message) -> Optional[int]:
    external_id = message.external_message_id or ""
    if not external_id.startswith(OUTBOUND_PREFIX):
        return None
    try:
        return int(external_id[len(OUTBOUND_PREFIX):])
    except ValueError:
        return None


class TelegramSyncService:
    POLL_DIALOGS = 20
    POLL_MESSAGES_PER_DIALOG = 5
    READ_CHECK_LIMIT = 100

    def __init__(
        self,
        config: TelegramConfig,
        client_factory: Optional[Callable[[], TelegramClient]] = None,
        event_bus: Optional[MessageEventBus] = None,
    ):
        self.config = config
        self._client_factory = client_factory or (lambda: user_client(config))
        self.event_bus = event_bus

    async def _connect(self) -> TelegramClient:
        missing = self.config.missing_credentials() if self.config.connection_type == "user_api" else "Not a user_api channel"
        if missing:
            raise TelegramSyncError(missing)
        try:
            client = self._client_factory()
            await client.connect()
        except Exception as e:
            raise TelegramSyncError(str(e)) from e
        return client

    async def _ingest(self, db: Session, user_id: UUID, event: Optional[InboundEvent], stats: SyncStats) -> None:
        if event is None:
            return
        message = ingest_inbound(db, user_id, event)
        if message is None:
            stats.skipped += 1
            return
        stats.synced += 1
        stats.stored.append(message)
        if self.event_bus is not None:
            await self.event_bus.publish_message(message)

    async def _resolve_entity(self, tg: TelegramClient, db: Session, client: Client):
        if client.telegram_id:
            try:
                return await tg.get_entity(int(client.telegram_id))
            except (ValueError, TypeError) as e:
                logger.info(
                    "Cached telegram_id did not resolve, trying phone",
                    extra={"context": {"client_id": str(client.id), "error": str(e)}},
                )

        phone = normalize_phone(client.phone)
        if not phone:
            return None
        try:
            entity = await tg.get_entity(f"+{phone}")
        except (ValueError, TypeError):
            return None
        client.telegram_id = str(entity.id)
        db.commit()
        return entity

    async def backfill(self, db: Session, user_id: UUID, client: Client, limit: int = 50) -> SyncStats:
        """Import the latest ``limit`` messages of one client's chat."""
        stats = SyncStats(clients_checked=1)
        tg = await self._connect()
        try:
            entity = await self._resolve_entity(tg, db, client)
            if entity is None:
                logger.info("No Telegram account for client", extra={"context": {"client_id": str(client.id)}})
                return stats
            async for message in tg.iter_messages(entity, limit=limit):
                await self._ingest(db, user_id, message_to_event(message, entity), stats)
        finally:
            await tg.disconnect()

        logger.info(
            "Telegram chat backfilled",
            extra={"context": {"user_id": str(user_id), "client_id": str(client.id), "synced": stats.synced}},
        )
        return stats

    def _known_clients(self, db: Session, user_id: UUID) -> Tuple[Dict[str, Client], Dict[str, Client]]:
        by_tg_id, by_phone = {}, {}
        for client in db.query(Client).filter(Client.agent_id == user_id).all():
            if client.telegram_id:
                by_tg_id[client.telegram_id] = client
            phone = normalize_phone(client.phone)
            if phone:
                by_phone[phone] = client
        return by_tg_id, by_phone

    async def poll(self, db: Session, user_id: UUID) -> SyncStats:
        """Fetch recent messages from the latest private dialogs of known clients.

        Dialogs with people who are not clients of the agent are left alone.
        """
        stats = SyncStats()
        by_tg_id, by_phone = self._known_clients(db, user_id)
        tg = await self._connect()
        try:
            async for dialog in tg.iter_dialogs(limit=self.POLL_DIALOGS):
                entity = dialog.entity
                if not isinstance(entity, types.User) or entity.bot:
                    continue

                tg_id = str(entity.id)
                client = by_tg_id.get(tg_id)
                if client is None and entity.phone:
                    client = by_phone.get(normalize_phone(entity.phone))
                    if client is not None and not client.telegram_id:
                        client.telegram_id = tg_id
                        db.commit()
                if client is None:
                    continue

                stats.clients_checked += 1
                try:
                    async for message in tg.iter_messages(entity, limit=self.POLL_MESSAGES_PER_DIALOG):
                        await self._ingest(db, user_id, message_to_event(message, entity), stats)
                except Exception as e:
                    db.rollback()
                    logger.warning(
                        "Telegram dialog poll failed",
                        extra={"context": {"user_id": str(user_id), "peer": tg_id, "error": str(e)}},
                    )

            read_updated, notifications_read = await self._check_read(tg, db, user_id)
        finally:
            await tg.disconnect()

        stats.read_updated = read_updated
        stats.notifications_read = notifications_read
        logger.info(
            "Telegram dialogs polled",
            extra={
                "context": {
                    "user_id": str(user_id),
                    "clients_checked": stats.clients_checked,
                    "synced": stats.synced,
                    "read_updated": read_updated,
                }
            },
        )
        return stats

    async def check_read(self, db: Session, user_id: UUID) -> SyncStats:
        tg = await self._connect()
        try:
            read_updated, notifications_read = await self._check_read(tg, db, user_id)
        finally:
            await tg.disconnect()
        return SyncStats(read_updated=read_updated, notifications_read=notifications_read)

    async def _read_outbox_max_id(self, tg: TelegramClient, peer_id: str) -> int:
        peer = await tg.get_input_entity(int(peer_id))
        result = await tg(functions.messages.GetPeerDialogsRequest(peers=[types.InputDialogPeer(peer=peer)]))
        if not result.dialogs:
            return 0
        return result.dialogs[0].read_outbox_max_id or 0

    async def _check_read(self, tg: TelegramClient, db: Session, user_id: UUID) -> Tuple[int, int]:
        pending = (
            db.query(Message, Client.telegram_id)
            .join(Client, Client.id == Message.client_id)
            .filter(
                Message.user_id == user_id,
                Message.channel == "telegram",
                Message.direction == "out",
                Message.delivery_status == "sent",
                Message.external_message_id.isnot(None),
                Client.telegram_id.isnot(None),
            )
            .order_by(Message.created_at.desc())
            .limit(self.READ_CHECK_LIMIT)
            .all()
        )

        by_peer = defaultdict(list)
        for message, peer_id in pending:
            if outbound_telegram_id(message) is not None:
                by_peer[peer_id].append(message)

        updated = 0
        for peer_id, messages in by_peer.items():
            try:
                read_max = await self._read_outbox_max_id(tg, peer_id)
            except Exception as e:
                logger.warning(
                    "Read status check failed for peer",
                    extra={"context": {"user_id": str(user_id), "peer": peer_id, "error": str(e)}},
                )
                continue
            for message in messages:
                if outbound_telegram_id(message) <= read_max:
                    message.delivery_status = "read"
                    updated += 1
        if updated:
            db.commit()

        return updated, check_read_status(db, user_id)
