from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from crm_inbox.database import get_db
from crm_inbox.dependencies import get_current_user_id
from crm_inbox.models import NotificationLog
from crm_inbox.schemas.notification import DeliverResponse, NotificationLogOut, ReadStatusResponse, StatusUpdateRequest
from crm_inbox.services.notification_log_service import check_read_status, deliver_pending, list_logs, update_status
from crm_inbox.services.state_machine import InvalidTransitionError

router = APIRouter(prefix="/notifications")


@router.get("", response_model=list[NotificationLogOut])
def get_logs(
    status: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return list_logs(db, user_id, status=status, limit=limit)


@router.patch("/{log_id}/status", response_model=NotificationLogOut)
def patch_status(
    log_id: UUID,
    request: StatusUpdateRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    log = (
        db.query(NotificationLog)
        .filter(NotificationLog.id == log_id, NotificationLog.user_id == user_id)
        .first()
    )
    if log is None:
        raise HTTPException(status_code=404, detail="Notification not found")

    try:
        return update_status(
            db,
            log,
            request.status,
            external_message_id=request.external_message_id,
            error_message=request.error_message,
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/deliver", response_model=DeliverResponse)
async def deliver(user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    sent = await deliver_pending(db, user_id)
    return DeliverResponse(sent=sent)


@router.post("/check-read-status", response_model=ReadStatusResponse)
def check_read(user_id: UUID = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return ReadStatusResponse(updated=check_read_status(db, user_id))
