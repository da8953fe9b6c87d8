"""Live inbox for the agent UI.

The socket pushes ``conversations`` snapshots whenever the cached view
changes, plus ``sound`` cues for incoming messages. The client drives it
with small JSON commands: send, mark_read, messages, toggle_mute.
"""

import asyncio
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from crm_inbox.config import settings
from crm_inbox.database import SessionLocal
from crm_inbox.logging_config import get_logger
from crm_inbox.schemas.message import ConversationOut
from crm_inbox.services.inbox import Inbox
from crm_inbox.services.sound import MuteState
from crm_inbox.services.sync_service import InboxSynchronizer

logger = get_logger("inbox_ws")

router = APIRouter()

SNAPSHOT = object()


def conversations_payload(inbox: Inbox) -> dict:
    return {
        "type": "conversations",
        "total_unread": inbox.total_unread,
        "muted": inbox.muted,
        "conversations": jsonable_encoder([ConversationOut.model_validate(s) for s in inbox.conversations]),
    }


async def handle_command(inbox: Inbox, command: dict) -> dict:
    action = command.get("action")

    if action == "send":
        content = (command.get("content") or "").strip()
        if not content or not command.get("client_id"):
            return {"type": "error", "error": "client_id and content are required"}
        ticket = await inbox.send_message(
            command["client_id"],
            content,
            command.get("channel") or "whatsapp",
            is_internal=bool(command.get("is_internal")),
        )
        return {"type": "send_result", **jsonable_encoder(ticket)}

    if action == "mark_read":
        ok = await inbox.mark_as_read(command["client_id"])
        return {"type": "mark_read_result", "client_id": command["client_id"], "success": ok}

    if action == "messages":
        items = await inbox.client_messages(command["client_id"], reload=bool(command.get("reload")))
        return {"type": "messages", "client_id": command["client_id"], "messages": jsonable_encoder(items)}

    if action == "toggle_mute":
        return {"type": "mute", "muted": inbox.toggle_mute()}

    return {"type": "error", "error": f"Unknown action {action}"}


@router.websocket("/ws/inbox")
async def inbox_socket(websocket: WebSocket, user_id: UUID):
    await websocket.accept()
    outgoing: asyncio.Queue = asyncio.Queue()
    snapshot_queued = False

    def queue_snapshot() -> None:
        # bursts of changes collapse into one snapshot
        nonlocal snapshot_queued
        if not snapshot_queued:
            snapshot_queued = True
            outgoing.put_nowait(SNAPSHOT)

    inbox = Inbox(
        user_id,
        session_factory=getattr(websocket.app.state, "session_factory", SessionLocal),
        event_bus=getattr(websocket.app.state, "event_bus", None),
        mute_state=MuteState(settings.mute_state_path, user_id),
        sound_cue=lambda data_uri: outgoing.put_nowait({"type": "sound", "data_uri": data_uri}),
        on_change=queue_snapshot,
    )
    synchronizer = InboxSynchronizer(inbox, inbox.event_bus)

    async def pump() -> None:
        nonlocal snapshot_queued
        while True:
            item = await outgoing.get()
            if item is SNAPSHOT:
                snapshot_queued = False
                item = conversations_payload(inbox)
            await websocket.send_json(item)

    sender = asyncio.create_task(pump())
    try:
        await synchronizer.start()
        while True:
            command = await websocket.receive_json()
            try:
                reply = await handle_command(inbox, command)
            except (KeyError, ValueError) as e:
                reply = {"type": "error", "error": f"Bad command: {e}"}
            outgoing.put_nowait(reply)
    except WebSocketDisconnect:
        logger.info("Inbox socket closed", extra={"context": {"user_id": str(user_id)}})
    finally:
        await synchronizer.stop()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
