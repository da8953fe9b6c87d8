from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from crm_inbox.database import get_db
from crm_inbox.dependencies import get_current_user_id, get_event_bus
from crm_inbox.schemas.message import (
    ConversationOut,
    ConversationsResponse,
    MarkReadResponse,
    MessageOut,
    SendMessageRequest,
    SendMessageResponse,
    TransferChatRequest,
)
from crm_inbox.services.conversation_service import (
    fetch_client_messages,
    fetch_conversations,
    fetch_messages_since,
    mark_client_read,
    transfer_chat,
)
from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.send_service import send_outbound

router = APIRouter()


@router.get("/conversations", response_model=ConversationsResponse)
def list_conversations(user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    summaries, _ = fetch_conversations(db, user_id)
    return ConversationsResponse(
        total_unread=sum(s.unread_count for s in summaries),
        conversations=[ConversationOut.model_validate(s) for s in summaries],
    )


@router.get("/conversations/{client_id}/messages", response_model=list[MessageOut])
def client_messages(
    client_id: UUID,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return fetch_client_messages(db, user_id, client_id, limit)


@router.post("/conversations/{client_id}/read", response_model=MarkReadResponse)
def mark_read(client_id: UUID, user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    updated = mark_client_read(db, user_id, client_id)
    return MarkReadResponse(success=True, updated=updated)


@router.post("/conversations/{client_id}/transfer", response_model=MessageOut)
async def transfer(
    client_id: UUID,
    request: TransferChatRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    note = transfer_chat(db, user_id, client_id, request.to_manager_id, request.from_name, request.to_name)
    if event_bus is not None:
        await event_bus.publish_message(note)
    return note


@router.get("/messages/since", response_model=list[MessageOut])
def messages_since(
    since: datetime,
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Polling fallback for clients without a realtime connection."""
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return fetch_messages_since(db, user_id, since, limit)


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    result = await send_outbound(
        db,
        user_id,
        request.client_id,
        request.content,
        request.channel,
        is_internal=request.is_internal,
        media_url=request.media_url,
        media_type=request.media_type,
    )
    if not result.ok:
        if result.error_code == "not_found":
            raise HTTPException(status_code=404, detail=result.error)
        return SendMessageResponse(success=False, error=result.error, error_code=result.error_code)

    message = result.value
    if event_bus is not None:
        await event_bus.publish_message(message)
    return SendMessageResponse(success=True, message=MessageOut.model_validate(message))
