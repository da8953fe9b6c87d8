import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from conftest import make_channel, make_client, make_message
from telethon import types

from crm_inbox.models import Client, Message, NotificationLog
from crm_inbox.services.channel_config import TelegramConfig
from crm_inbox.services.telegram_sync_service import (
    MEDIA_KINDS,
    TelegramSyncError,
    TelegramSyncService,
    message_to_event,
    normalize_phone,
)

CONFIG = TelegramConfig(connection_type="user_api", api_id="12345", api_hash="hash", session_string="1Aa")


def _user(user_id=321, phone="79001234567", first_name="Олег", bot=False):
    return types.User(id=user_id, first_name=first_name, phone=phone, bot=bot)


def _tg_message(message_id, text="", out=False, **media):
    data = {
        "id": message_id,
        "out": out,
        "message": text,
        "date": datetime(2026, 10, 18, 9, message_id, tzinfo=timezone.utc),
        "file": None,
    }
    data.update({kind: None for kind in MEDIA_KINDS})
    data.update(media)
    return SimpleNamespace(**data)


class FakeTelegram:
    """Just enough of TelegramClient for the sync paths."""

    def __init__(self, dialogs=(), history=None, entities=None, read_outbox=None, broken=False):
        self.dialogs = list(dialogs)
        self.history = history or {}
        self.entities = entities or {}
        self.read_outbox = read_outbox or {}
        self.broken = broken
        self.disconnected = False

    async def connect(self):
        pass

    async def disconnect(self):
        self.disconnected = True

    async def get_entity(self, key):
        if key not in self.entities:
            raise ValueError(f"Cannot find any entity corresponding to {key}")
        return self.entities[key]

    async def get_input_entity(self, key):
        return key

    async def iter_dialogs(self, limit=None):
        for dialog in self.dialogs[:limit]:
            yield dialog

    async def iter_messages(self, entity, limit=None):
        for message in self.history.get(entity.id, [])[:limit]:
            yield message

    async def __call__(self, request):
        if self.broken:
            raise RuntimeError("FLOOD_WAIT_30")
        peer = request.peers[0].peer
        if peer not in self.read_outbox:
            return SimpleNamespace(dialogs=[])
        return SimpleNamespace(dialogs=[SimpleNamespace(read_outbox_max_id=self.read_outbox[peer])])


def _service(fake):
    return TelegramSyncService(CONFIG, client_factory=lambda: fake)


class TestMessageToEvent:
    def test_outgoing_skipped(self):
        assert message_to_event(_tg_message(1, "hi", out=True), _user()) is None

    def test_empty_service_message_skipped(self):
        assert message_to_event(_tg_message(1), _user()) is None

    def test_sticker_wins_over_document(self):
        message = _tg_message(4, sticker=object(), document=object(), file=SimpleNamespace(mime_type="image/webp"))

        event = message_to_event(message, _user())

        assert event.attachments[0].kind == "sticker"
        assert event.attachments[0].mime == "image/webp"
        assert event.external_message_id == "telegram_321_4"
        assert event.sender_name == "Олег"

    def test_phone_normalized(self):
        assert normalize_phone("8 (900) 123-45-67") == "79001234567"
        assert normalize_phone("telegram_321") == ""


class TestBackfill:
    def test_history_imported_once(self, db, agent_id):
        client = make_client(db, agent_id)
        user = _user()
        fake = FakeTelegram(
            entities={"+79001234567": user},
            history={321: [_tg_message(3, "Когда продление?"), _tg_message(2, "Добрый день", out=True), _tg_message(1, "Здравствуйте")]},
        )

        first = asyncio.run(_service(fake).backfill(db, agent_id, client))
        second = asyncio.run(_service(fake).backfill(db, agent_id, client))

        assert first.synced == 2
        assert second.synced == 0
        assert second.skipped == 2
        assert fake.disconnected
        db.refresh(client)
        assert client.telegram_id == "321"
        stored = db.query(Message).order_by(Message.created_at).all()
        assert [m.content for m in stored] == ["Здравствуйте", "Когда продление?"]
        assert {m.client_id for m in stored} == {client.id}
        assert db.query(Client).count() == 1

    def test_unknown_account_syncs_nothing(self, db, agent_id):
        client = make_client(db, agent_id)

        stats = asyncio.run(_service(FakeTelegram()).backfill(db, agent_id, client))

        assert stats.synced == 0
        assert db.query(Message).count() == 0

    def test_missing_session_raises_without_connecting(self, db, agent_id):
        factory = Mock()
        service = TelegramSyncService(
            TelegramConfig(connection_type="user_api", api_id="1", api_hash="h"), client_factory=factory
        )

        with pytest.raises(TelegramSyncError):
            asyncio.run(service.backfill(db, agent_id, make_client(db, agent_id)))
        factory.assert_not_called()


class TestPoll:
    def test_only_known_clients_polled(self, db, agent_id):
        client = make_client(db, agent_id)
        known = _user()
        stranger = _user(user_id=999, phone="79990000000", first_name="Незнакомец")
        bot = _user(user_id=777, phone=None, first_name="Bot", bot=True)
        channel = SimpleNamespace(id=555)
        fake = FakeTelegram(
            dialogs=[SimpleNamespace(entity=e) for e in (channel, bot, stranger, known)],
            history={
                321: [_tg_message(5, "Пришлите счёт")],
                999: [_tg_message(6, "спам")],
                777: [_tg_message(7, "/start")],
            },
        )

        stats = asyncio.run(_service(fake).poll(db, agent_id))

        assert stats.clients_checked == 1
        assert stats.synced == 1
        assert [m.content for m in db.query(Message).all()] == ["Пришлите счёт"]
        assert db.query(Client).count() == 1
        db.refresh(client)
        assert client.telegram_id == "321"

    def test_published_to_event_bus(self, db, agent_id):
        make_client(db, agent_id, telegram_id="321", phone=None)
        bus = Mock()
        published = []

        async def publish(message):
            published.append(message.content)

        bus.publish_message = publish
        fake = FakeTelegram(dialogs=[SimpleNamespace(entity=_user())], history={321: [_tg_message(5, "Пришлите счёт")]})

        asyncio.run(TelegramSyncService(CONFIG, client_factory=lambda: fake, event_bus=bus).poll(db, agent_id))

        assert published == ["Пришлите счёт"]


class TestCheckRead:
    def _outbound(self, db, agent_id, client, telegram_id):
        return make_message(
            db,
            agent_id,
            client,
            direction="out",
            channel="telegram",
            is_read=True,
            delivery_status="sent",
            external_message_id=f"telegram_out_{telegram_id}",
        )

    def test_read_outbox_marks_messages_and_notifications(self, db, agent_id):
        client = make_client(db, agent_id, telegram_id="321")
        read = self._outbound(db, agent_id, client, 10)
        unread = self._outbound(db, agent_id, client, 12)
        log = NotificationLog(
            user_id=agent_id,
            client_id=client.id,
            channel="telegram",
            message="Ваш полис истекает",
            status="sent",
            source="scheduled",
            sent_on=date(2026, 10, 18),
            external_message_id="telegram_out_10",
        )
        db.add(log)
        db.commit()

        stats = asyncio.run(_service(FakeTelegram(read_outbox={321: 11})).check_read(db, agent_id))

        assert stats.read_updated == 1
        assert stats.notifications_read == 1
        db.refresh(read)
        db.refresh(unread)
        db.refresh(log)
        assert read.delivery_status == "read"
        assert unread.delivery_status == "sent"
        assert log.status == "read"
        assert log.read_at is not None

    def test_peer_failure_skipped(self, db, agent_id):
        client = make_client(db, agent_id, telegram_id="321")
        message = self._outbound(db, agent_id, client, 10)

        stats = asyncio.run(_service(FakeTelegram(broken=True)).check_read(db, agent_id))

        assert stats.read_updated == 0
        db.refresh(message)
        assert message.delivery_status == "sent"


class TestSyncApi:
    def _headers(self, agent_id):
        return {"X-User-Id": str(agent_id)}

    def test_not_configured(self, api_client, agent_id):
        response = api_client.post("/channels/telegram/sync", headers=self._headers(agent_id), json={"action": "poll"})
        assert response.status_code == 404

    def test_backfill_needs_client(self, api_client, db, agent_id):
        make_channel(db, agent_id, "telegram", config=CONFIG.model_dump())

        response = api_client.post(
            "/channels/telegram/sync", headers=self._headers(agent_id), json={"action": "backfill"}
        )

        assert response.status_code == 400

    def test_bot_channel_cannot_sync(self, api_client, db, agent_id):
        make_channel(db, agent_id, "telegram", config={"connection_type": "bot", "bot_token": "123:abc"})

        response = api_client.post("/channels/telegram/sync", headers=self._headers(agent_id), json={"action": "poll"})

        assert response.status_code == 409
