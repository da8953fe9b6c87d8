from typing import Optional

from pydantic import BaseModel


class RunTriggersRequest(BaseModel):
    is_test_mode: bool = True


class RunTriggersResponse(BaseModel):
    processed: int
    duplicates: int = 0
    channel_errors: int = 0
    errors: list[str] = []
    source: str


class ThrottledResponse(BaseModel):
    throttled: bool = True
    retry_after: int
    message: str


class ScheduledRunResponse(BaseModel):
    processed: dict[str, int]
    message: Optional[str] = None
