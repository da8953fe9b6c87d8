"""Keeps an Inbox current from two producers.

The realtime subscriber pushes events as they are published; the poller
re-reads recent rows every few seconds in case a push was missed. Both end in
``Inbox.ingest``, which is idempotent by message id, so overlap is harmless.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from crm_inbox.config import settings
from crm_inbox.logging_config import LoggerAdapter, get_logger
from crm_inbox.services.conversation_service import fetch_messages_since
from crm_inbox.services.event_bus import UPDATE, MessageEventBus
from crm_inbox.services.inbox import Inbox
from crm_inbox.services.message_cache import CachedMessage


class RealtimeSubscriber:
    def __init__(self, inbox: Inbox, event_bus: MessageEventBus):
        self.inbox = inbox
        self.event_bus = event_bus
        self.logger = LoggerAdapter(get_logger("realtime"), {"user_id": inbox.user_id})

    async def handle(self, event: str, record: dict) -> None:
        if record.get("user_id") and record["user_id"] != self.inbox.user_id:
            return
        await self.inbox.ingest([record], source="realtime", updates_only=event == UPDATE)

    async def run(self) -> None:
        while True:
            try:
                async for event, record in self.event_bus.events():
                    try:
                        await self.handle(event, record)
                    except Exception as e:
                        self.logger.error(f"Realtime event failed: {e}", exc_info=True)
            except asyncio.CancelledError:
                break
            except Exception as e:
                # the poller keeps the view fresh while we reconnect
                self.logger.warning(f"Realtime subscription dropped: {e}")
                await asyncio.sleep(settings.poll_interval_seconds)


class MessagePoller:
    MAX_PAGES_PER_TICK = 10

    def __init__(
        self,
        inbox: Inbox,
        interval_seconds: Optional[float] = None,
        batch_limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ):
        self.inbox = inbox
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.batch_limit = batch_limit or settings.poll_batch_limit
        self.last_poll_at = since or datetime.now(timezone.utc)
        self.last_id: Optional[UUID] = None
        self.logger = LoggerAdapter(get_logger("poller"), {"user_id": inbox.user_id})

    def reset(self, since: Optional[datetime] = None) -> None:
        self.last_poll_at = since or datetime.now(timezone.utc)
        self.last_id = None

    async def tick(self) -> int:
        """One poll; pages forward until the backlog is drained.

        The cursor is the last row seen, so a failed query or a burst larger
        than one page is picked up by the next page or the next tick.
        """
        added_total = 0
        for _ in range(self.MAX_PAGES_PER_TICK):
            try:
                db = self.inbox.session_factory()
                try:
                    rows = fetch_messages_since(
                        db, UUID(self.inbox.user_id), self.last_poll_at, self.batch_limit, after_id=self.last_id
                    )
                    records = [CachedMessage.from_model(row) for row in rows]
                    cursor = (rows[-1].created_at, rows[-1].id) if rows else None
                finally:
                    db.close()
            except Exception as e:
                self.logger.warning(f"Poll failed: {e}", context={"since": self.last_poll_at.isoformat()})
                break

            if not records:
                break
            self.last_poll_at, self.last_id = cursor
            added = await self.inbox.ingest(records, source="poll")
            added_total += len(added)
            if len(records) < self.batch_limit:
                break
        return added_total

    async def run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Poller loop failed: {e}")


class InboxSynchronizer:
    """Starts and stops both producers for one Inbox."""

    def __init__(self, inbox: Inbox, event_bus: Optional[MessageEventBus] = None, poller: Optional[MessagePoller] = None):
        self.inbox = inbox
        self.subscriber = RealtimeSubscriber(inbox, event_bus) if event_bus else None
        self.poller = poller or MessagePoller(inbox)
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        self.poller.reset()
        await self.inbox.refresh()
        self._tasks.append(asyncio.create_task(self.poller.run()))
        if self.subscriber is not None:
            self._tasks.append(asyncio.create_task(self.subscriber.run()))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
