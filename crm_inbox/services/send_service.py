from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import ChannelSetting, Client, Message
from crm_inbox.services.bridges import OutboundMessage, SessionBridge, build_bridge
from crm_inbox.services.channel_store import check_channel_ready, get_channel_setting
from crm_inbox.services.result import Result

logger = get_logger("send_service")

INTERNAL_CHANNEL = "internal"


def resolve_target(client: Client, channel: str) -> Optional[str]:
    """Where to deliver on ``channel``: the chat seen on the last inbound message, else a known id."""
    known = (client.messenger_ids or {}).get(channel)
    if known:
        return known
    if channel.startswith("telegram") and client.telegram_id:
        return client.telegram_id
    if channel.startswith("whatsapp") and client.phone and not client.phone.startswith("whatsapp_"):
        return client.phone
    return None


async def send_outbound(
    db: Session,
    user_id: UUID,
    client_id: UUID,
    content: str,
    channel: str,
    is_internal: bool = False,
    is_automated: bool = False,
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    bridge_factory: Callable[[ChannelSetting], SessionBridge] = build_bridge,
) -> Result[Message]:
    """Persist an outbound message and hand it to the channel bridge.

    Fails without writing anything when the client is unknown or the channel
    cannot send. Once the row exists the call succeeds; a provider failure is
    recorded on the row as ``delivery_status=error``.
    """
    client = db.query(Client).filter(Client.id == client_id).first()
    if client is None:
        return Result.failure("Client not found", "not_found")

    if is_internal:
        channel = INTERNAL_CHANNEL
    else:
        ready, error = check_channel_ready(db, user_id, channel)
        if not ready:
            return Result.failure(error, "channel_not_ready")
        target = resolve_target(client, channel)
        if not target:
            return Result.failure(f"Нет контакта клиента для канала {channel}", "no_target")

    message = Message(
        client_id=client.id,
        user_id=user_id,
        manager_id=user_id,
        direction="out",
        channel=channel,
        content=content,
        message_type=media_type or "text",
        media_url=media_url,
        media_type=media_type,
        is_internal=is_internal,
        is_automated=is_automated,
        is_read=True,
        delivery_status="sent" if is_internal else "pending",
        created_at=utcnow(),
    )
    db.add(message)
    db.commit()

    if is_internal:
        return Result.success(message)

    setting = get_channel_setting(db, user_id, channel)
    try:
        bridge = bridge_factory(setting)
    except ValueError as e:
        result = Result.failure(str(e), "no_bridge")
    else:
        result = await bridge.send(
            OutboundMessage(target=target, text=content, media_url=media_url, media_type=media_type)
        )

    if result.ok:
        message.delivery_status = "sent"
        if result.value:
            message.external_message_id = f"{channel}_out_{result.value}"
    else:
        message.delivery_status = "error"
        logger.warning(
            "Outbound delivery failed",
            extra={
                "context": {
                    "message_id": str(message.id),
                    "channel": channel,
                    "error": result.error,
                    "error_code": result.error_code,
                }
            },
        )
    db.commit()
    return Result.success(message)
