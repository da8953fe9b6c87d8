import os
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.throttle import RunThrottle


def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> UUID:
    """Acting agent. Authentication happens in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-User-Id")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def get_event_bus(request: Request) -> Optional[MessageEventBus]:
    return getattr(request.app.state, "event_bus", None)


def get_run_throttle(request: Request) -> RunThrottle:
    return request.app.state.run_throttle
