from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import ChannelSetting
from crm_inbox.services.channel_config import (
    ChannelConfig,
    ChannelStatus,
    dump_channel_config,
    parse_channel_config,
)

logger = get_logger("channel_store")


def get_channel_setting(db: Session, user_id: UUID, channel: str) -> Optional[ChannelSetting]:
    return (
        db.query(ChannelSetting)
        .filter(ChannelSetting.user_id == user_id, ChannelSetting.channel == channel)
        .first()
    )


def list_channel_settings(db: Session, user_id: UUID) -> List[ChannelSetting]:
    return (
        db.query(ChannelSetting)
        .filter(ChannelSetting.user_id == user_id)
        .order_by(ChannelSetting.channel)
        .all()
    )


def get_channel_config(setting: ChannelSetting) -> ChannelConfig:
    """Typed view over a stored setting."""
    return parse_channel_config(setting.channel, setting.config)


def upsert_channel(
    db: Session,
    user_id: UUID,
    channel: str,
    is_active: Optional[bool] = None,
    status: Optional[str] = None,
    config: Optional[dict] = None,
) -> ChannelSetting:
    """Create or update the (user, channel) setting.

    The config is validated against the channel's schema before it is stored;
    a ChannelConfigError leaves the row untouched. On update the new config is
    merged over the stored one so partial edits keep existing credentials.
    """
    setting = get_channel_setting(db, user_id, channel)

    merged = dict(setting.config or {}) if setting else {}
    if config is not None:
        merged.update(config)
    validated = parse_channel_config(channel, merged)

    if setting is None:
        setting = ChannelSetting(
            user_id=user_id,
            channel=channel,
            is_active=bool(is_active) if is_active is not None else False,
            status=ChannelStatus(status or ChannelStatus.NOT_CONFIGURED).value,
            config=dump_channel_config(validated),
        )
        db.add(setting)
        logger.info(
            "Channel setting created",
            extra={"context": {"user_id": str(user_id), "channel": channel}},
        )
    else:
        setting.config = dump_channel_config(validated)
        if is_active is not None:
            setting.is_active = is_active
        if status is not None:
            setting.status = ChannelStatus(status).value
        setting.updated_at = utcnow()
        logger.info(
            "Channel setting updated",
            extra={"context": {"user_id": str(user_id), "channel": channel, "status": setting.status}},
        )

    db.flush()
    return setting


def set_channel_status(db: Session, setting: ChannelSetting, status: ChannelStatus) -> bool:
    """Returns True if the stored status changed."""
    if setting.status == status.value:
        return False
    logger.info(
        "Channel status changed",
        extra={
            "context": {
                "user_id": str(setting.user_id),
                "channel": setting.channel,
                "from": setting.status,
                "to": status.value,
            }
        },
    )
    setting.status = status.value
    setting.updated_at = utcnow()
    db.flush()
    return True


def check_channel_ready(db: Session, user_id: UUID, channel: str) -> Tuple[bool, Optional[str]]:
    """Can ``channel`` send on behalf of the agent right now?

    Returns (ready, error_message). Never raises: a corrupt stored config is
    reported as not ready.
    """
    setting = get_channel_setting(db, user_id, channel)
    if setting is None or not setting.is_active:
        return False, f"Канал {channel} не настроен или отключён"
    try:
        config = get_channel_config(setting)
    except ValueError as e:
        return False, str(e)
    missing = config.missing_credentials()
    if missing:
        return False, missing
    return True, None
