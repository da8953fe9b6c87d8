"""Inbound messenger webhooks.

Providers retry on anything but 200, so every handler answers ``{"ok": true}``
whatever happened inside; problems end up in the logs.
"""

import hmac
import json
from typing import Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from crm_inbox.config import settings
from crm_inbox.database import get_db
from crm_inbox.dependencies import get_event_bus
from crm_inbox.logging_config import get_logger
from crm_inbox.schemas.max import MaxUpdate
from crm_inbox.schemas.telegram import TelegramUpdate
from crm_inbox.schemas.whatsapp import WhatsAppWebhookBody, WhatsAppWebhookRequest
from crm_inbox.services.channel_store import get_channel_setting
from crm_inbox.services.event_bus import MessageEventBus
from crm_inbox.services.inbound_service import (
    InboundEvent,
    event_from_max,
    event_from_telegram,
    event_from_whatsapp,
    ingest_inbound,
    resolve_max_agent,
)

logger = get_logger("webhooks")

router = APIRouter(prefix="/webhooks")

OK = {"ok": True}


async def parse_webhook_payload(request: Request) -> Optional[dict]:
    """
    Parse webhook JSON with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode webhook payload after fallbacks")
    return None


def _configured_secret(db: Session, user_id: UUID, channels: Tuple[str, ...]) -> Optional[str]:
    for channel in channels:
        setting = get_channel_setting(db, user_id, channel)
        secret = (setting.config or {}).get("webhook_secret") if setting else None
        if secret and str(secret).strip():
            return str(secret).strip()
    return None


def _request_secret(request: Request, header: str) -> Optional[str]:
    for value in (
        request.headers.get(header),
        request.headers.get("X-Webhook-Secret"),
        request.query_params.get("webhook_secret"),
    ):
        if value:
            return value.strip()
    return None


def secret_accepted(
    db: Session,
    user_id: UUID,
    request: Request,
    channels: Tuple[str, ...],
    header: str = "X-Webhook-Secret",
) -> bool:
    """Check the shared secret of the agent's channel setting.

    A setting with ``webhook_secret`` requires a matching header (or
    ``webhook_secret`` query param). Without one the event passes unless
    ``require_webhook_secret`` is on.
    """
    expected = _configured_secret(db, user_id, channels)
    provided = _request_secret(request, header)
    context = {"user_id": str(user_id), "channel": channels[0]}
    if expected:
        if provided and hmac.compare_digest(provided, expected):
            return True
        logger.warning("Invalid webhook secret, event dropped", extra={"context": context})
        return False
    if settings.require_webhook_secret:
        logger.warning("Webhook secret not configured, event dropped", extra={"context": context})
        return False
    if not provided:
        logger.warning("Webhook secret missing", extra={"context": context})
    return True


async def _store(
    db: Session,
    user_id: Optional[UUID],
    event: Optional[InboundEvent],
    event_bus: Optional[MessageEventBus],
) -> None:
    if event is None:
        return
    if user_id is None:
        logger.warning("No agent for inbound message", extra={"context": {"channel": event.channel}})
        return
    message = ingest_inbound(db, user_id, event)
    if message is not None and event_bus is not None:
        await event_bus.publish_message(message)


@router.get("/max", response_class=PlainTextResponse)
async def verify_max_webhook():
    return "OK"


@router.get("/telegram/{user_id}", response_class=PlainTextResponse)
async def verify_telegram_webhook(user_id: UUID):
    return "OK"


@router.get("/whatsapp/{user_id}", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(user_id: UUID):
    return "OK"


@router.post("/max")
async def max_webhook(
    request: Request,
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    try:
        body = await parse_webhook_payload(request)
        if body is None:
            return OK
        logger.debug("MAX webhook received", extra={"context": {"update_type": body.get("update_type")}})
        event = event_from_max(MaxUpdate(**body))
        user_id = resolve_max_agent(db) if event else None
        if user_id is not None and not secret_accepted(db, user_id, request, ("max",), "X-Max-Bot-Api-Secret"):
            return OK
        await _store(db, user_id, event, event_bus)
    except Exception as e:
        logger.error(f"MAX webhook error: {e}", exc_info=True)
    return OK


@router.post("/telegram/{user_id}")
async def telegram_webhook(
    user_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    try:
        body = await parse_webhook_payload(request)
        if body is None:
            return OK
        if not secret_accepted(db, user_id, request, ("telegram",), "X-Telegram-Bot-Api-Secret-Token"):
            return OK
        event = event_from_telegram(TelegramUpdate(**body))
        await _store(db, user_id, event, event_bus)
    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
    return OK


@router.post("/whatsapp/{user_id}")
async def whatsapp_webhook(
    user_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    event_bus: Optional[MessageEventBus] = Depends(get_event_bus),
):
    try:
        body = await parse_webhook_payload(request)
        if body is None:
            return OK
        if not secret_accepted(db, user_id, request, ("whatsapp", "whatsapp_web")):
            return OK
        # gateways send either {"body": {...}} or the body itself
        payload = WhatsAppWebhookRequest(**body).body if "body" in body else WhatsAppWebhookBody(**body)
        event = event_from_whatsapp(payload)
        await _store(db, user_id, event, event_bus)
    except Exception as e:
        logger.error(f"WhatsApp webhook error: {e}", exc_info=True)
    return OK
