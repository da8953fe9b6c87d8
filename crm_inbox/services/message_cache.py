"""Client-side view of the agent's conversations.

Holds the conversation list and the loaded per-client message lists, and is
the single place where pushed, polled and optimistic messages meet. Every
producer goes through ``merge``, which is keyed by message id and therefore
safe to call with the same record more than once.
"""

import copy
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from crm_inbox.services.conversation_service import ConversationSummary

OPTIMISTIC_PREFIX = "optimistic-"
SEEN_IDS_LIMIT = 5000


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        dt = datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class CachedMessage:
    id: str
    client_id: str
    direction: str
    channel: str
    content: str
    created_at: datetime
    user_id: Optional[str] = None
    manager_id: Optional[str] = None
    message_type: str = "text"
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    is_internal: bool = False
    is_automated: bool = False
    is_read: bool = False
    delivery_status: str = "sent"
    optimistic: bool = False

    @classmethod
    def from_record(cls, record: dict) -> "CachedMessage":
        """Build from a realtime/poll record (row serialized to a dict)."""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in record.items() if k in known}
        for key in ("id", "client_id", "user_id", "manager_id"):
            if data.get(key) is not None:
                data[key] = str(data[key])
        data["created_at"] = _parse_datetime(record.get("created_at"))
        data["content"] = data.get("content") or ""
        return cls(**data)

    @classmethod
    def from_model(cls, message) -> "CachedMessage":
        return cls(
            id=str(message.id),
            client_id=str(message.client_id),
            user_id=str(message.user_id) if message.user_id else None,
            manager_id=str(message.manager_id) if message.manager_id else None,
            direction=message.direction,
            channel=message.channel,
            content=message.content or "",
            created_at=_parse_datetime(message.created_at),
            message_type=message.message_type or "text",
            media_url=message.media_url,
            media_type=message.media_type,
            is_internal=bool(message.is_internal),
            is_automated=bool(message.is_automated),
            is_read=bool(message.is_read),
            delivery_status=message.delivery_status or "sent",
        )


@dataclass
class OptimisticSnapshot:
    """Pre-mutation state captured by ``apply_optimistic``."""

    client_id: str
    optimistic_id: str
    summary: Optional[ConversationSummary]


@dataclass
class ReadSnapshot:
    client_id: str
    unread_count: int
    flipped_ids: List[str] = field(default_factory=list)
    unread_ids: List[str] = field(default_factory=list)


class ConversationCache:
    def __init__(self, user_id: str, reconcile_window_seconds: int = 120):
        self.user_id = str(user_id)
        self.reconcile_window = timedelta(seconds=reconcile_window_seconds)
        self._summaries: Dict[str, ConversationSummary] = {}
        self._messages: Dict[str, List[CachedMessage]] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    # --- reads ---

    @property
    def conversations(self) -> List[ConversationSummary]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(self._summaries.values(), key=lambda s: s.last_message_at or epoch, reverse=True)

    @property
    def total_unread(self) -> int:
        return sum(s.unread_count for s in self._summaries.values())

    def summary(self, client_id: str) -> Optional[ConversationSummary]:
        return self._summaries.get(str(client_id))

    def messages(self, client_id: str) -> Optional[List[CachedMessage]]:
        """Loaded messages of the client, oldest first; None if never loaded."""
        items = self._messages.get(str(client_id))
        return list(items) if items is not None else None

    def live_optimistic(self, client_id: str) -> Optional[CachedMessage]:
        for item in self._messages.get(str(client_id), []):
            if item.optimistic:
                return item
        return None

    # --- loads ---

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        self._seen.move_to_end(message_id)
        while len(self._seen) > SEEN_IDS_LIMIT:
            self._seen.popitem(last=False)

    def load_conversations(self, summaries: Iterable[ConversationSummary], seen_ids: Iterable[str] = ()) -> None:
        self._summaries = {s.client_id: s for s in summaries}
        for message_id in seen_ids:
            self._remember(message_id)

    def load_messages(self, client_id: str, items: Iterable[CachedMessage]) -> None:
        client_id = str(client_id)
        pending = [m for m in self._messages.get(client_id, []) if m.optimistic]
        loaded = list(items)
        for item in loaded:
            self._remember(item.id)
        self._messages[client_id] = loaded
        for item in pending:
            self._insert_sorted(client_id, item)
        self._strip_confirmed(client_id, loaded)

    # --- optimistic two-phase send ---

    def apply_optimistic(
        self,
        client_id: str,
        content: str,
        channel: str,
        is_internal: bool = False,
        now: Optional[datetime] = None,
    ) -> OptimisticSnapshot:
        client_id = str(client_id)
        now = now or datetime.now(timezone.utc)
        snapshot = OptimisticSnapshot(
            client_id=client_id,
            optimistic_id=f"{OPTIMISTIC_PREFIX}{uuid.uuid4()}",
            summary=copy.copy(self._summaries.get(client_id)),
        )
        tentative = CachedMessage(
            id=snapshot.optimistic_id,
            client_id=client_id,
            user_id=self.user_id,
            manager_id=self.user_id,
            direction="out",
            channel=channel,
            content=content,
            created_at=now,
            is_internal=is_internal,
            is_read=True,
            delivery_status="pending",
            optimistic=True,
        )
        self._messages.setdefault(client_id, [])
        self._insert_sorted(client_id, tentative)
        self._touch_summary(tentative)
        return snapshot

    def rollback(self, snapshot: OptimisticSnapshot) -> None:
        """Undo ``apply_optimistic``; messages merged in the meantime stay."""
        client_id = snapshot.client_id
        items = self._messages.get(client_id)
        if items is not None:
            self._messages[client_id] = [m for m in items if m.id != snapshot.optimistic_id]

        current = self._summaries.get(client_id)
        newer = [
            m
            for m in self._messages.get(client_id, [])
            if current is not None and current.last_message_at and m.created_at >= current.last_message_at
        ]
        if current is None or newer:
            return
        if snapshot.summary is None:
            del self._summaries[client_id]
        else:
            restored = copy.copy(snapshot.summary)
            restored.unread_count = current.unread_count
            restored.unread_ids = current.unread_ids
            self._summaries[client_id] = restored

    # --- merge ---

    def merge(self, records: Iterable[CachedMessage], updates_only: bool = False) -> List[CachedMessage]:
        """Merge server messages; returns the ones not seen before.

        With ``updates_only`` unknown ids are ignored (UPDATE events never add rows).
        """
        added, _ = self.merge_changes(records, updates_only)
        return added

    def merge_changes(
        self, records: Iterable[CachedMessage], updates_only: bool = False
    ) -> Tuple[List[CachedMessage], List[CachedMessage]]:
        """Like ``merge`` but also reports known messages whose state changed."""
        added = []
        updated = []
        for record in records:
            client_id = record.client_id
            items = self._messages.get(client_id)

            existing = None
            if items is not None:
                existing = next((m for m in items if m.id == record.id), None)
            if existing is not None:
                if self._apply_update(existing, record):
                    updated.append(record)
                continue
            if updates_only or record.id in self._seen:
                # known from the conversation scan but its history is not loaded
                if record.is_read and self._drop_unread(client_id, record.id):
                    updated.append(record)
                continue

            self._remember(record.id)
            if items is not None:
                self._insert_sorted(client_id, record)
                self._strip_confirmed(client_id, [record])
            self._touch_summary(record)
            if record.direction == "in" and not record.is_read:
                summary = self._summaries[client_id]
                summary.unread_count += 1
                summary.unread_ids.append(record.id)
            added.append(record)
        return added, updated

    def _apply_update(self, existing: CachedMessage, record: CachedMessage) -> bool:
        """UPDATE event for a loaded message: read flag, delivery status, manager."""
        changed = (
            existing.is_read != record.is_read
            or existing.delivery_status != record.delivery_status
            or existing.manager_id != record.manager_id
        )
        if not changed:
            return False
        if existing.direction == "in" and not existing.is_read and record.is_read:
            self._drop_unread(existing.client_id, existing.id, loaded=True)
        existing.is_read = record.is_read
        existing.delivery_status = record.delivery_status
        existing.manager_id = record.manager_id
        return True

    def _drop_unread(self, client_id: str, message_id: str, loaded: bool = False) -> bool:
        summary = self._summaries.get(client_id)
        if summary is None:
            return False
        if message_id in summary.unread_ids:
            summary.unread_ids.remove(message_id)
        elif not loaded:
            return False
        summary.unread_count = max(0, summary.unread_count - 1)
        return True

    # --- read marking ---

    def mark_read_local(self, client_id: str) -> ReadSnapshot:
        client_id = str(client_id)
        summary = self._summaries.get(client_id)
        snapshot = ReadSnapshot(client_id=client_id, unread_count=summary.unread_count if summary else 0)
        if summary:
            snapshot.unread_ids = list(summary.unread_ids)
            summary.unread_count = 0
            summary.unread_ids = []
        for item in self._messages.get(client_id, []):
            if item.direction == "in" and not item.is_read:
                item.is_read = True
                snapshot.flipped_ids.append(item.id)
        return snapshot

    def restore_read(self, snapshot: ReadSnapshot) -> None:
        summary = self._summaries.get(snapshot.client_id)
        if summary:
            summary.unread_count += snapshot.unread_count
            summary.unread_ids = snapshot.unread_ids + [i for i in summary.unread_ids if i not in snapshot.unread_ids]
        flipped = set(snapshot.flipped_ids)
        for item in self._messages.get(snapshot.client_id, []):
            if item.id in flipped:
                item.is_read = False

    # --- internals ---

    def _insert_sorted(self, client_id: str, item: CachedMessage) -> None:
        items = self._messages[client_id]
        items.append(item)
        # stable: equal timestamps keep arrival order
        items.sort(key=lambda m: m.created_at)

    def _strip_confirmed(self, client_id: str, confirmed: Iterable[CachedMessage]) -> None:
        """Drop optimistic entries that a server message now stands in for."""
        mine = [m for m in confirmed if m.direction == "out" and m.user_id == self.user_id and not m.optimistic]
        if not mine:
            return
        items = self._messages.get(client_id, [])
        keep = []
        for item in items:
            if item.optimistic and any(self._reconciles(item, server) for server in mine):
                continue
            keep.append(item)
        self._messages[client_id] = keep

    def _reconciles(self, tentative: CachedMessage, server: CachedMessage) -> bool:
        return (
            tentative.content == server.content
            and tentative.user_id == server.user_id
            and abs(server.created_at - tentative.created_at) <= self.reconcile_window
        )

    def _touch_summary(self, item: CachedMessage) -> None:
        summary = self._summaries.get(item.client_id)
        if summary is None:
            self._summaries[item.client_id] = ConversationSummary(
                client_id=item.client_id,
                client_name="",
                client_phone=None,
                last_message=item.content,
                last_message_at=item.created_at,
                last_channel=item.channel,
                manager_id=item.manager_id,
                last_is_automated=item.is_automated,
            )
            return
        if summary.last_message_at is None or item.created_at >= summary.last_message_at:
            self._summaries[item.client_id] = replace(
                summary,
                last_message=item.content,
                last_message_at=item.created_at,
                last_channel=item.channel,
                manager_id=item.manager_id or summary.manager_id,
                last_is_automated=item.is_automated,
            )
