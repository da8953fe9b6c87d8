from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.orm import Session

from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import Client, Message, NotificationLog
from crm_inbox.services.inbound_service import unarchive_client
from crm_inbox.services.send_service import send_outbound
from crm_inbox.services.state_machine import NotificationStatus, transition

logger = get_logger("notification_log_service")

AUTOPILOT_PREFIX = "Автопилот"


def list_logs(
    db: Session,
    user_id: UUID,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[NotificationLog]:
    query = db.query(NotificationLog).filter(NotificationLog.user_id == user_id)
    if status:
        query = query.filter(NotificationLog.status == status)
    return query.order_by(NotificationLog.sent_at.desc()).limit(limit).all()


def update_status(
    db: Session,
    log: NotificationLog,
    new_status: NotificationStatus,
    external_message_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> NotificationLog:
    """Move a log row along pending -> sent -> delivered -> read (or -> error).

    Raises InvalidTransitionError for moves the lifecycle does not allow.
    """
    current = NotificationStatus(log.status)
    log.status = transition(current, new_status).value
    if external_message_id:
        log.external_message_id = external_message_id
    if error_message:
        log.error_message = error_message
    if new_status is NotificationStatus.READ and log.read_at is None:
        log.read_at = utcnow()
    log.updated_at = utcnow()
    db.commit()
    logger.info(
        "Notification status changed",
        extra={"context": {"log_id": str(log.id), "from": current.value, "to": new_status.value}},
    )
    return log


async def deliver_pending(
    db: Session,
    user_id: UUID,
    send: Callable[..., Awaitable] = send_outbound,
    limit: int = 50,
) -> int:
    """Send prepared (pending) notifications of the agent; returns how many went out.

    Each delivered notice is also written to the conversation as an automated
    outbound message.
    """
    pending = (
        db.query(NotificationLog)
        .filter(NotificationLog.user_id == user_id, NotificationLog.status == NotificationStatus.PENDING.value)
        .order_by(NotificationLog.sent_at)
        .limit(limit)
        .all()
    )

    sent = 0
    for log in pending:
        content = f"{AUTOPILOT_PREFIX}: {log.template_title}\n\n{log.message}" if log.template_title else log.message
        try:
            result = await send(db, user_id, log.client_id, content, log.channel, is_automated=True)
        except Exception as e:
            db.rollback()
            logger.error(f"Notification delivery crashed: {e}", extra={"context": {"log_id": str(log.id)}})
            update_status(db, log, NotificationStatus.ERROR, error_message=str(e))
            continue

        if not result.ok:
            update_status(db, log, NotificationStatus.ERROR, error_message=result.error)
            continue

        message = result.value
        if message.delivery_status != "sent":
            update_status(db, log, NotificationStatus.ERROR, error_message="Ошибка отправки")
            continue

        update_status(db, log, NotificationStatus.SENT, external_message_id=message.external_message_id)
        client = db.query(Client).filter(Client.id == log.client_id).first()
        if client is not None:
            unarchive_client(db, client)
        sent += 1

    if pending:
        logger.info(
            "Pending notifications delivered",
            extra={"context": {"user_id": str(user_id), "pending": len(pending), "sent": sent}},
        )
    return sent


def check_read_status(db: Session, user_id: UUID) -> int:
    """Mark sent notifications read once their conversation message was read.

    The log and the outbound message share ``(channel, external_message_id)``;
    read receipts land on the message first (bridge callbacks, Telegram sync).
    """
    rows = (
        db.query(NotificationLog)
        .join(
            Message,
            and_(
                Message.channel == NotificationLog.channel,
                Message.external_message_id == NotificationLog.external_message_id,
            ),
        )
        .filter(
            NotificationLog.user_id == user_id,
            NotificationLog.status.in_([NotificationStatus.SENT.value, NotificationStatus.DELIVERED.value]),
            NotificationLog.read_at.is_(None),
            Message.user_id == user_id,
            Message.direction == "out",
            Message.delivery_status == "read",
        )
        .all()
    )

    for log in rows:
        update_status(db, log, NotificationStatus.READ)

    if rows:
        logger.info("Read receipts applied", extra={"context": {"user_id": str(user_id), "updated": len(rows)}})
    return len(rows)
