import asyncio
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from crm_inbox.logging_config import get_logger
from crm_inbox.models import ChannelSetting
from crm_inbox.services.alert_service import alert_reconnect_required
from crm_inbox.services.bridges import SessionBridge, SessionCheck, build_bridge
from crm_inbox.services.channel_config import ChannelStatus
from crm_inbox.services.channel_store import get_channel_setting, set_channel_status

logger = get_logger("session_service")


async def reconcile_session(
    db: Session,
    user_id: UUID,
    channel: str,
    bridge_factory: Callable[[ChannelSetting], SessionBridge] = build_bridge,
) -> Optional[SessionCheck]:
    """Check the live session behind a channel setting and fix up its stored status.

    Returns None when the agent has no setting for the channel.
    """
    setting = get_channel_setting(db, user_id, channel)
    if setting is None:
        return None

    try:
        bridge = bridge_factory(setting)
    except ValueError as e:
        check = SessionCheck(valid=False, reason=str(e))
    else:
        check = await bridge.check_session()

    if check.not_configured:
        new_status = ChannelStatus.NOT_CONFIGURED
    elif check.valid:
        new_status = ChannelStatus.CONNECTED
    else:
        new_status = ChannelStatus.ERROR

    changed = set_channel_status(db, setting, new_status)
    db.commit()

    logger.info(
        "Session checked",
        extra={
            "context": {
                "user_id": str(user_id),
                "channel": channel,
                "valid": check.valid,
                "status": new_status.value,
                "changed": changed,
                "reason": check.reason,
            }
        },
    )

    if check.session_expired and changed:
        await asyncio.to_thread(alert_reconnect_required, user_id, channel, check.reason)

    return check
