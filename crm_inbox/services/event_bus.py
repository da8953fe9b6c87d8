"""Realtime message events over Redis pub/sub.

Every process that writes a message publishes ``{"event", "record"}`` JSON on
one channel; inbox sessions subscribe and feed the records into their merge.
"""

import json
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis_async

from crm_inbox.config import settings
from crm_inbox.logging_config import get_logger
from crm_inbox.models import Message

logger = get_logger("event_bus")

INSERT = "INSERT"
UPDATE = "UPDATE"


def message_record(message: Message) -> dict:
    return {
        "id": str(message.id),
        "client_id": str(message.client_id),
        "user_id": str(message.user_id) if message.user_id else None,
        "manager_id": str(message.manager_id) if message.manager_id else None,
        "direction": message.direction,
        "channel": message.channel,
        "content": message.content,
        "message_type": message.message_type,
        "media_url": message.media_url,
        "media_type": message.media_type,
        "is_internal": bool(message.is_internal),
        "is_automated": bool(message.is_automated),
        "is_read": bool(message.is_read),
        "delivery_status": message.delivery_status,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class MessageEventBus:
    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None, client=None):
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.realtime_channel
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = redis_async.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def publish(self, event: str, record: dict) -> bool:
        """Best effort: the poller covers anything lost here."""
        try:
            await self.client.publish(self.channel, json.dumps({"event": event, "record": record}, ensure_ascii=False))
            return True
        except Exception as e:
            logger.warning(
                f"Realtime publish failed: {e}",
                extra={"context": {"event": event, "message_id": record.get("id")}},
            )
            return False

    async def publish_message(self, message: Message, event: str = INSERT) -> bool:
        return await self.publish(event, message_record(message))

    async def events(self) -> AsyncIterator[Tuple[str, dict]]:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.channel)
        try:
            async for raw in pubsub.listen():
                if raw is None or raw.get("type") != "message":
                    continue
                try:
                    payload = json.loads(raw["data"])
                except (TypeError, ValueError):
                    logger.warning("Malformed realtime payload skipped")
                    continue
                yield payload.get("event", INSERT), payload.get("record") or {}
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
