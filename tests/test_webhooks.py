from unittest.mock import AsyncMock, Mock, patch

from conftest import make_channel

from crm_inbox.models import Client, Message


def _max_payload(mid="mid.1", text="Добрый день"):
    return {
        "update_type": "message_created",
        "timestamp": 1760000000000,
        "message": {
            "sender": {"user_id": 555, "name": "Анна"},
            "recipient": {"chat_id": 9001},
            "timestamp": 1760000000,
            "body": {"mid": mid, "text": text},
        },
    }


class TestVerification:
    def test_get_returns_ok(self, api_client, agent_id):
        assert api_client.get("/webhooks/max").text == "OK"
        assert api_client.get(f"/webhooks/telegram/{agent_id}").text == "OK"
        assert api_client.get(f"/webhooks/whatsapp/{agent_id}").text == "OK"


class TestMaxWebhook:
    def test_message_stored_once(self, api_client, db, agent_id):
        make_channel(db, agent_id, "max", config={"api_key": "k"})

        first = api_client.post("/webhooks/max", json=_max_payload())
        second = api_client.post("/webhooks/max", json=_max_payload())

        assert first.status_code == 200
        assert first.json() == {"ok": True}
        assert second.json() == {"ok": True}
        db.expire_all()
        messages = db.query(Message).all()
        assert len(messages) == 1
        assert messages[0].user_id == agent_id
        assert messages[0].external_message_id == "max_555_mid.1"

    def test_no_agent_still_ok(self, api_client, db):
        response = api_client.post("/webhooks/max", json=_max_payload())
        assert response.json() == {"ok": True}
        assert db.query(Message).count() == 0

    def test_garbage_body_still_ok(self, api_client):
        response = api_client.post(
            "/webhooks/max", content=b"\xff\xfe not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    @patch("crm_inbox.routers.webhooks.ingest_inbound", side_effect=RuntimeError("db down"))
    def test_internal_error_still_ok(self, mock_ingest, api_client, db, agent_id):
        make_channel(db, agent_id, "max", config={"api_key": "k"})
        response = api_client.post("/webhooks/max", json=_max_payload())
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        mock_ingest.assert_called_once()


def _telegram_payload(message_id=7):
    return {
        "update_id": message_id,
        "message": {
            "message_id": message_id,
            "date": 1760000000,
            "chat": {"id": 321, "type": "private"},
            "from": {"id": 321, "is_bot": False, "first_name": "Олег"},
            "text": "Сколько стоит КАСКО?",
        },
    }


class TestTelegramWebhook:
    def test_message_stored(self, api_client, db, agent_id):
        response = api_client.post(f"/webhooks/telegram/{agent_id}", json=_telegram_payload())

        assert response.json() == {"ok": True}
        message = db.query(Message).one()
        client = db.query(Client).one()
        assert message.content == "Сколько стоит КАСКО?"
        assert client.telegram_id == "321"
        assert client.first_name == "Олег"


class TestWhatsAppWebhook:
    def test_wrapped_body(self, api_client, db, agent_id):
        payload = {
            "body": {
                "messageType": "text",
                "message": "Добрый день",
                "metadata": {"sender": "Мария", "remoteJid": "79001234567@s.whatsapp.net", "messageId": "A1"},
            }
        }
        api_client.post(f"/webhooks/whatsapp/{agent_id}", json=payload)

        client = db.query(Client).one()
        assert client.phone == "+79001234567"
        assert client.first_name == "Мария"

    def test_published_to_event_bus(self, api_client, agent_id):
        bus = Mock()
        bus.publish_message = AsyncMock(return_value=True)
        api_client.app.state.event_bus = bus
        try:
            api_client.post(
                f"/webhooks/whatsapp/{agent_id}",
                json={"message": "hi", "metadata": {"remoteJid": "79001234567@s.whatsapp.net", "messageId": "A2"}},
            )
        finally:
            api_client.app.state.event_bus = None
        bus.publish_message.assert_awaited_once()


class TestWebhookSecret:
    def test_telegram_secret_token_checked(self, api_client, db, agent_id):
        make_channel(db, agent_id, "telegram", config={"bot_token": "t", "webhook_secret": "s3cret"})
        url = f"/webhooks/telegram/{agent_id}"

        missing = api_client.post(url, json=_telegram_payload(1))
        wrong = api_client.post(url, json=_telegram_payload(2), headers={"X-Telegram-Bot-Api-Secret-Token": "nope"})
        right = api_client.post(url, json=_telegram_payload(3), headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})

        assert [r.status_code for r in (missing, wrong, right)] == [200, 200, 200]
        assert wrong.json() == {"ok": True}
        db.expire_all()
        assert [m.external_message_id for m in db.query(Message).all()] == ["telegram_321_3"]

    def test_whatsapp_secret_in_query_or_header(self, api_client, db, agent_id):
        make_channel(db, agent_id, "whatsapp", config={"webhook_secret": "s3cret"})
        url = f"/webhooks/whatsapp/{agent_id}"

        def body(message_id):
            return {"message": "hi", "metadata": {"remoteJid": "79001234567@s.whatsapp.net", "messageId": message_id}}

        api_client.post(url, json=body("A1"), headers={"X-Webhook-Secret": "wrong"})
        api_client.post(url, json=body("A2"), params={"webhook_secret": "s3cret"})
        api_client.post(url, json=body("A3"), headers={"X-Webhook-Secret": "s3cret"})

        db.expire_all()
        assert db.query(Message).count() == 2
        assert db.query(Client).count() == 1

    def test_max_secret_checked(self, api_client, db, agent_id):
        make_channel(db, agent_id, "max", config={"api_key": "k", "webhook_secret": "s3cret"})

        api_client.post("/webhooks/max", json=_max_payload("mid.1"))
        api_client.post("/webhooks/max", json=_max_payload("mid.2"), headers={"X-Max-Bot-Api-Secret": "s3cret"})

        db.expire_all()
        assert [m.external_message_id for m in db.query(Message).all()] == ["max_555_mid.2"]

    def test_required_secret_drops_unconfigured_channels(self, api_client, db, agent_id, monkeypatch):
        monkeypatch.setattr("crm_inbox.routers.webhooks.settings.require_webhook_secret", True)

        response = api_client.post(f"/webhooks/telegram/{agent_id}", json=_telegram_payload())

        assert response.json() == {"ok": True}
        assert db.query(Message).count() == 0
