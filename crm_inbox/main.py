import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm_inbox.config import settings
from crm_inbox.database import SessionLocal
from crm_inbox.logging_config import get_logger, setup_logging
from crm_inbox.routers import channels, conversations, inbox_ws, notifications, triggers, webhooks
from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.notification_log_service import deliver_pending
from crm_inbox.services.throttle import RedisRunThrottle
from crm_inbox.services.trigger_service import run_scheduled

setup_logging(settings.log_level)

app = FastAPI(
    title="CRM Inbox API",
    description="Conversation and notification core of the agency CRM",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations.router)
app.include_router(channels.router)
app.include_router(webhooks.router)
app.include_router(triggers.router)
app.include_router(notifications.router)
app.include_router(inbox_ws.router)

app.state.run_throttle = RedisRunThrottle(settings.trigger_throttle_seconds)
app.state.event_bus = None

scheduler_logger = get_logger("scheduler")
_scheduler_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_background_disabled() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST"))


def _is_scheduler_enabled() -> bool:
    if _is_background_disabled():
        return False
    return _is_env_enabled(os.environ.get("SCHEDULER_ENABLED"), default=True)


def _is_realtime_enabled() -> bool:
    if _is_background_disabled():
        return False
    return _is_env_enabled(os.environ.get("REALTIME_ENABLED"), default=True)


async def _scheduler_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.scheduler_interval_seconds, 1.0))
            db = SessionLocal()
            try:
                results = await run_scheduled(db, deliver=deliver_pending)
                if results:
                    scheduler_logger.info("Scheduled triggers processed", extra={"context": results})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            scheduler_logger.error(
                "Scheduler loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_background() -> None:
    global _scheduler_task
    if _is_realtime_enabled() and app.state.event_bus is None:
        app.state.event_bus = MessageEventBus()
    if not _is_scheduler_enabled():
        return
    if _scheduler_task is None or _scheduler_task.done():
        _scheduler_task = asyncio.create_task(_scheduler_loop())
        scheduler_logger.info("Trigger scheduler started")


@app.on_event("shutdown")
async def stop_background() -> None:
    global _scheduler_task
    if app.state.event_bus is not None:
        await app.state.event_bus.close()
        app.state.event_bus = None
    if _scheduler_task is None:
        return
    _scheduler_task.cancel()
    try:
        await _scheduler_task
    except asyncio.CancelledError:
        pass
    _scheduler_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
