"""Conversation surface used by the agent's UI session.

One Inbox per signed-in agent. It owns the conversation cache, runs the
optimistic send protocol and is the merge point for the realtime subscriber
and the poller (see sync_service).
"""

import asyncio
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Union
from uuid import UUID

from crm_inbox.config import settings
from crm_inbox.database import SessionLocal
from crm_inbox.logging_config import LoggerAdapter, get_logger
from crm_inbox.services.conversation_service import (
    ConversationSummary,
    fetch_client_messages,
    fetch_conversations,
    mark_client_read,
)
from crm_inbox.services.event_bus import INSERT, MessageEventBus, message_record
from crm_inbox.services.message_cache import CachedMessage, ConversationCache
from crm_inbox.services.send_service import send_outbound
from crm_inbox.services.sound import MuteState, notification_sound_data_uri

SoundCue = Callable[[str], None]
ChangeListener = Callable[[], None]


@dataclass
class SendTicket:
    client_id: str
    optimistic_id: str
    status: str = "pending"  # pending, confirmed, failed
    message_id: Optional[str] = None
    error: Optional[str] = None


class Inbox:
    def __init__(
        self,
        user_id: Union[str, UUID],
        session_factory=SessionLocal,
        event_bus: Optional[MessageEventBus] = None,
        mute_state: Optional[MuteState] = None,
        sound_cue: Optional[SoundCue] = None,
        send: Callable[..., Awaitable] = send_outbound,
        cache: Optional[ConversationCache] = None,
        on_change: Optional[ChangeListener] = None,
    ):
        self.user_id = str(UUID(str(user_id)))
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.mute_state = mute_state or MuteState()
        self.sound_cue = sound_cue
        self._send = send
        self.cache = cache or ConversationCache(self.user_id, settings.reconcile_window_seconds)
        self.on_change = on_change
        self._client_locks: dict = defaultdict(asyncio.Lock)
        self.logger = LoggerAdapter(get_logger("inbox"), {"user_id": self.user_id})

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # --- reads ---

    @property
    def conversations(self) -> List[ConversationSummary]:
        return self.cache.conversations

    @property
    def total_unread(self) -> int:
        return self.cache.total_unread

    @property
    def muted(self) -> bool:
        return self.mute_state.muted

    async def refresh(self) -> List[ConversationSummary]:
        with self._session() as db:
            summaries, seen = fetch_conversations(db, UUID(self.user_id))
        self.cache.load_conversations(summaries, seen)
        self._notify()
        return self.cache.conversations

    async def client_messages(self, client_id: Union[str, UUID], reload: bool = False) -> List[CachedMessage]:
        client_id = str(client_id)
        cached = self.cache.messages(client_id)
        if cached is not None and not reload:
            return cached
        with self._session() as db:
            rows = fetch_client_messages(db, UUID(self.user_id), UUID(client_id))
            items = [CachedMessage.from_model(row) for row in rows]
        self.cache.load_messages(client_id, items)
        return self.cache.messages(client_id)

    # --- writes ---

    async def send_message(
        self,
        client_id: Union[str, UUID],
        content: str,
        channel: str,
        is_internal: bool = False,
    ) -> SendTicket:
        """Show the message right away, then persist it.

        Sends to the same client are serialized, so at most one optimistic
        message per conversation is live at any time.
        """
        client_id = str(client_id)
        async with self._client_locks[client_id]:
            if self.cache.messages(client_id) is None:
                await self.client_messages(client_id)

            snapshot = self.cache.apply_optimistic(client_id, content, channel, is_internal)
            self._notify()
            ticket = SendTicket(client_id=client_id, optimistic_id=snapshot.optimistic_id)

            record = None
            try:
                with self._session() as db:
                    result = await self._send(
                        db, UUID(self.user_id), UUID(client_id), content, channel, is_internal=is_internal
                    )
                    if result.ok:
                        record = message_record(result.value)
            except Exception as e:
                self.logger.error(f"Send failed: {e}", exc_info=True, context={"client_id": client_id})
                result = None
                ticket.error = str(e)

            if record is None:
                self.cache.rollback(snapshot)
                self._notify()
                ticket.status = "failed"
                ticket.error = ticket.error or result.error
                self.logger.warning("Optimistic send rolled back", context={"client_id": client_id, "error": ticket.error})
                return ticket

            self.cache.merge([CachedMessage.from_record(record)])
            self._notify()
            ticket.status = "confirmed"
            ticket.message_id = record["id"]

        if self.event_bus is not None:
            await self.event_bus.publish(INSERT, record)
        return ticket

    async def mark_as_read(self, client_id: Union[str, UUID]) -> bool:
        client_id = str(client_id)
        snapshot = self.cache.mark_read_local(client_id)
        self._notify()
        try:
            with self._session() as db:
                mark_client_read(db, UUID(self.user_id), UUID(client_id))
        except Exception as e:
            self.cache.restore_read(snapshot)
            self._notify()
            self.logger.error(f"Mark as read failed: {e}", context={"client_id": client_id})
            return False
        return True

    def toggle_mute(self) -> bool:
        return self.mute_state.toggle()

    # --- merge point for realtime and polling ---

    async def ingest(
        self,
        records: Iterable[Union[dict, CachedMessage]],
        source: str = "realtime",
        updates_only: bool = False,
    ) -> List[CachedMessage]:
        items = [r if isinstance(r, CachedMessage) else CachedMessage.from_record(r) for r in records]
        items = [r for r in items if r.user_id is None or r.user_id == self.user_id]
        added, updated = self.cache.merge_changes(items, updates_only=updates_only)
        if not (added or updated):
            return added

        self.logger.debug(
            "Merged messages", context={"source": source, "added": len(added), "updated": len(updated)}
        )
        self._notify()

        if any(r.direction == "in" for r in added):
            self._play_cue()

        unknown = [r for r in added if not getattr(self.cache.summary(r.client_id), "client_name", None)]
        if unknown:
            # new client: pick up names and phone from the store
            await self.refresh()
        return added

    def _play_cue(self) -> None:
        if self.sound_cue is None or self.mute_state.muted:
            return
        try:
            self.sound_cue(notification_sound_data_uri())
        except Exception as e:
            self.logger.warning(f"Sound cue failed: {e}")

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception as e:
            self.logger.warning(f"Change listener failed: {e}")
