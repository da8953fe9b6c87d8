from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_inbox.database import get_db
from crm_inbox.dependencies import get_current_user_id, get_run_throttle, require_admin_token
from crm_inbox.logging_config import get_logger
from crm_inbox.schemas.trigger import RunTriggersRequest, RunTriggersResponse, ScheduledRunResponse, ThrottledResponse
from crm_inbox.services.notification_log_service import deliver_pending
from crm_inbox.services.throttle import RunThrottle, TriggerThrottled
from crm_inbox.services.trigger_service import TriggerRunError, run_scheduled, run_triggers_report

logger = get_logger("triggers")

router = APIRouter(prefix="/triggers")


@router.post("/run", response_model=RunTriggersResponse, responses={429: {"model": ThrottledResponse}})
def run(
    request: RunTriggersRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    throttle: RunThrottle = Depends(get_run_throttle),
):
    """Manual trigger run. Limited to one per agent per throttle interval."""
    try:
        report = run_triggers_report(db, user_id, request.is_test_mode, source="manual", throttle=throttle)
    except TriggerThrottled as e:
        body = ThrottledResponse(retry_after=e.retry_after_seconds, message=str(e))
        return JSONResponse(
            status_code=429,
            content=body.model_dump(),
            headers={"Retry-After": str(e.retry_after_seconds)},
        )
    except TriggerRunError as e:
        logger.error(f"Trigger run failed: {e}", extra={"context": {"user_id": str(user_id)}})
        raise HTTPException(status_code=500, detail=str(e))

    return RunTriggersResponse(
        processed=report.processed,
        duplicates=report.duplicates,
        channel_errors=report.channel_errors,
        errors=report.errors,
        source=report.source,
    )


@router.post("/run-scheduled", response_model=ScheduledRunResponse)
async def run_scheduled_now(db: Session = Depends(get_db), _: None = Depends(require_admin_token)):
    """Admin hook for the scheduled pass (the background loop calls the same code)."""
    processed = await run_scheduled(db, deliver=deliver_pending)
    message = None if processed else "No agents due"
    return ScheduledRunResponse(processed=processed, message=message)
