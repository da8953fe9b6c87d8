from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from crm_inbox.database import get_db
from crm_inbox.dependencies import get_current_user_id, get_event_bus
from crm_inbox.models import Client
from crm_inbox.schemas.channel import (
    ChannelSettingOut,
    ChannelUpsertRequest,
    SessionCheckResponse,
    TelegramSyncRequest,
    TelegramSyncResponse,
)
from crm_inbox.services.channel_config import Channel, ChannelConfigError, parse_channel_config
from crm_inbox.services.channel_store import get_channel_setting, list_channel_settings, upsert_channel
from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.session_service import reconcile_session
from crm_inbox.services.telegram_sync_service import TelegramSyncError, TelegramSyncService

router = APIRouter(prefix="/channels")


def _validate_channel(channel: str) -> str:
    try:
        return Channel(channel).value
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown channel {channel}")


@router.get("", response_model=list[ChannelSettingOut])
def list_channels(user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return list_channel_settings(db, user_id)


@router.post("/telegram/sync", response_model=TelegramSyncResponse)
async def sync_telegram(
    request: TelegramSyncRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    setting = get_channel_setting(db, user_id, "telegram")
    if setting is None:
        raise HTTPException(status_code=404, detail="Channel telegram is not configured")
    try:
        config = parse_channel_config("telegram", setting.config)
    except ChannelConfigError as e:
        raise HTTPException(status_code=422, detail=e.detail)

    service = TelegramSyncService(config, event_bus=event_bus)
    try:
        if request.action == "backfill":
            if request.client_id is None:
                raise HTTPException(status_code=400, detail="client_id required for backfill")
            client = db.query(Client).filter(Client.id == request.client_id, Client.agent_id == user_id).first()
            if client is None:
                raise HTTPException(status_code=404, detail="Client not found")
            stats = await service.backfill(db, user_id, client, limit=request.limit)
        elif request.action == "poll":
            stats = await service.poll(db, user_id)
        else:
            stats = await service.check_read(db, user_id)
    except TelegramSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return TelegramSyncResponse(
        action=request.action,
        synced=stats.synced,
        skipped=stats.skipped,
        clients_checked=stats.clients_checked,
        read_updated=stats.read_updated,
        notifications_read=stats.notifications_read,
    )


@router.get("/{channel}", response_model=ChannelSettingOut)
def get_channel(channel: str, user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    setting = get_channel_setting(db, user_id, _validate_channel(channel))
    if setting is None:
        raise HTTPException(status_code=404, detail=f"Channel {channel} is not configured")
    return setting


@router.put("/{channel}", response_model=ChannelSettingOut)
def put_channel(
    channel: str,
    request: ChannelUpsertRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        setting = upsert_channel(
            db,
            user_id,
            _validate_channel(channel),
            is_active=request.is_active,
            status=request.status,
            config=request.config,
        )
    except ChannelConfigError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=e.detail)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=str(e))
    db.commit()
    db.refresh(setting)
    return setting


@router.post("/{channel}/check-session", response_model=SessionCheckResponse)
async def check_session(channel: str, user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    check = await reconcile_session(db, user_id, _validate_channel(channel))
    if check is None:
        raise HTTPException(status_code=404, detail=f"Channel {channel} is not configured")
    setting = get_channel_setting(db, user_id, channel)
    return SessionCheckResponse(
        valid=check.valid,
        status=setting.status,
        reason=check.reason,
        session_expired=check.session_expired,
        not_configured=check.not_configured,
    )
