from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from crm_inbox.config import settings
from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import Client, Message

logger = get_logger("conversation_service")


@dataclass
class ConversationSummary:
    client_id: str
    client_name: str
    client_phone: Optional[str]
    last_message: str
    last_message_at: Optional[datetime]
    last_channel: Optional[str]
    unread_count: int = 0
    manager_id: Optional[str] = None
    last_is_automated: bool = False
    unread_ids: List[str] = field(default_factory=list)


def _ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def fetch_conversations(
    db: Session,
    user_id: UUID,
    window: Optional[int] = None,
) -> Tuple[List[ConversationSummary], Set[str]]:
    """Build one summary per client from the agent's most recent messages.

    Only the latest ``window`` messages are scanned, so a client whose unread
    backlog started before the window is under-counted. Returns the summaries
    (newest conversation first) and the ids of the scanned messages.
    """
    window = window or settings.conversation_window
    rows = (
        db.query(Message, Client)
        .join(Client, Client.id == Message.client_id)
        .filter(Message.user_id == user_id)
        .order_by(Message.created_at.desc())
        .limit(window)
        .all()
    )

    summaries: dict[str, ConversationSummary] = {}
    seen: Set[str] = set()
    for message, client in rows:
        seen.add(str(message.id))
        key = str(client.id)
        summary = summaries.get(key)
        if summary is None:
            summary = ConversationSummary(
                client_id=key,
                client_name=client.full_name,
                client_phone=client.phone,
                last_message=message.content,
                last_message_at=_ensure_timezone(message.created_at),
                last_channel=message.channel,
                manager_id=str(message.manager_id) if message.manager_id else None,
                last_is_automated=bool(message.is_automated),
            )
            summaries[key] = summary
        if message.direction == "in" and not message.is_read:
            summary.unread_count += 1
            summary.unread_ids.append(str(message.id))

    result = sorted(summaries.values(), key=lambda s: s.last_message_at, reverse=True)
    return result, seen


def fetch_client_messages(db: Session, user_id: UUID, client_id: UUID, limit: Optional[int] = None) -> List[Message]:
    """Latest ``limit`` messages of one conversation, oldest first."""
    limit = limit or settings.client_messages_limit
    rows = (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.client_id == client_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    return rows


def fetch_messages_since(
    db: Session,
    user_id: UUID,
    since: datetime,
    limit: Optional[int] = None,
    after_id: Optional[UUID] = None,
) -> List[Message]:
    """Poll source: messages created after ``since``, oldest first.

    Pages forward: pass the last row's ``created_at`` and ``id`` back in to
    get the next page. ``after_id`` breaks ties between rows that share a
    timestamp.
    """
    limit = limit or settings.poll_batch_limit
    if after_id is None:
        newer = Message.created_at > since
    else:
        newer = or_(Message.created_at > since, and_(Message.created_at == since, Message.id > after_id))
    return (
        db.query(Message)
        .filter(Message.user_id == user_id, newer)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
        .all()
    )


def mark_client_read(db: Session, user_id: UUID, client_id: UUID) -> int:
    """Flag every unread inbound message of the client as read in one UPDATE."""
    updated = (
        db.query(Message)
        .filter(
            Message.user_id == user_id,
            Message.client_id == client_id,
            Message.direction == "in",
            Message.is_read.is_(False),
        )
        .update({Message.is_read: True}, synchronize_session=False)
    )
    db.commit()
    logger.info(
        "Conversation marked as read",
        extra={"context": {"user_id": str(user_id), "client_id": str(client_id), "updated": updated}},
    )
    return updated


def transfer_chat(
    db: Session,
    user_id: UUID,
    client_id: UUID,
    to_manager_id: UUID,
    from_name: str,
    to_name: str,
) -> Message:
    """Hand a conversation to another manager and leave an internal note about it."""
    db.query(Message).filter(Message.user_id == user_id, Message.client_id == client_id).update(
        {Message.manager_id: to_manager_id}, synchronize_session=False
    )
    note = Message(
        client_id=client_id,
        user_id=user_id,
        manager_id=to_manager_id,
        direction="out",
        channel="internal",
        content=f"Чат передан от {from_name} к {to_name}",
        is_internal=True,
        is_read=True,
        delivery_status="sent",
        created_at=utcnow(),
    )
    db.add(note)
    db.commit()
    logger.info(
        "Chat transferred",
        extra={"context": {"client_id": str(client_id), "to_manager_id": str(to_manager_id)}},
    )
    return note
