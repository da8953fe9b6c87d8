import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from conftest import make_channel, make_client, make_message, make_policy, make_trigger

from crm_inbox.models import NotificationLog
from crm_inbox.services.bridges import SessionCheck
from crm_inbox.services.throttle import RunThrottle


def _headers(agent_id):
    return {"X-User-Id": str(agent_id)}


class TestAuthHeader:
    def test_missing_user_header(self, api_client):
        assert api_client.get("/conversations").status_code == 401

    def test_invalid_user_header(self, api_client):
        assert api_client.get("/conversations", headers={"X-User-Id": "nope"}).status_code == 400

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}


class TestConversationsApi:
    def test_list(self, api_client, db, agent_id):
        client = make_client(db, agent_id)
        make_message(db, agent_id, client, content="Добрый день")

        response = api_client.get("/conversations", headers=_headers(agent_id))

        data = response.json()
        assert data["total_unread"] == 1
        assert data["conversations"][0]["client_name"] == "Петров Иван"
        assert data["conversations"][0]["last_message"] == "Добрый день"

    def test_messages_and_read(self, api_client, db, agent_id):
        client = make_client(db, agent_id)
        make_message(db, agent_id, client)

        messages = api_client.get(f"/conversations/{client.id}/messages", headers=_headers(agent_id)).json()
        read = api_client.post(f"/conversations/{client.id}/read", headers=_headers(agent_id)).json()

        assert len(messages) == 1
        assert read == {"success": True, "updated": 1}

    def test_send_channel_not_ready(self, api_client, db, agent_id):
        client = make_client(db, agent_id)

        response = api_client.post(
            "/messages",
            headers=_headers(agent_id),
            json={"client_id": str(client.id), "content": "Привет", "channel": "whatsapp"},
        )

        data = response.json()
        assert response.status_code == 200
        assert data["success"] is False
        assert data["error_code"] == "channel_not_ready"

    def test_send_unknown_client(self, api_client, agent_id):
        response = api_client.post(
            "/messages",
            headers=_headers(agent_id),
            json={"client_id": str(uuid.uuid4()), "content": "Привет", "channel": "whatsapp"},
        )
        assert response.status_code == 404

    def test_send_internal_note(self, api_client, db, agent_id):
        client = make_client(db, agent_id)

        response = api_client.post(
            "/messages",
            headers=_headers(agent_id),
            json={"client_id": str(client.id), "content": "Перезвонить", "is_internal": True},
        )

        data = response.json()
        assert data["success"] is True
        assert data["message"]["channel"] == "internal"

    def test_empty_content_rejected(self, api_client, agent_id):
        response = api_client.post(
            "/messages", headers=_headers(agent_id), json={"client_id": str(uuid.uuid4()), "content": ""}
        )
        assert response.status_code == 422

    def test_transfer(self, api_client, db, agent_id):
        client = make_client(db, agent_id)
        make_message(db, agent_id, client)

        response = api_client.post(
            f"/conversations/{client.id}/transfer",
            headers=_headers(agent_id),
            json={"to_manager_id": str(uuid.uuid4()), "from_name": "Иван", "to_name": "Мария"},
        )

        assert response.json()["content"] == "Чат передан от Иван к Мария"

    def test_messages_since(self, api_client, db, agent_id):
        client = make_client(db, agent_id)
        make_message(db, agent_id, client, content="new")

        response = api_client.get(
            "/messages/since", headers=_headers(agent_id), params={"since": "2000-01-01T00:00:00"}
        )

        assert [m["content"] for m in response.json()] == ["new"]


class TestChannelsApi:
    def test_put_and_get(self, api_client, agent_id):
        response = api_client.put(
            "/channels/telegram",
            headers=_headers(agent_id),
            json={"is_active": True, "config": {"bot_token": "123:abc"}},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "not_configured"

        listed = api_client.get("/channels", headers=_headers(agent_id)).json()
        assert [c["channel"] for c in listed] == ["telegram"]

    def test_invalid_config(self, api_client, agent_id):
        response = api_client.put(
            "/channels/whatsapp", headers=_headers(agent_id), json={"config": {"mode": "fax"}}
        )
        assert response.status_code == 422

    def test_unknown_channel(self, api_client, agent_id):
        assert api_client.get("/channels/pager", headers=_headers(agent_id)).status_code == 404

    def test_missing_setting(self, api_client, agent_id):
        assert api_client.get("/channels/max", headers=_headers(agent_id)).status_code == 404

    @patch("crm_inbox.routers.channels.reconcile_session")
    def test_check_session(self, mock_reconcile, api_client, db, agent_id):
        make_channel(db, agent_id, "max", status="connected", config={"api_key": "k"})
        mock_reconcile.return_value = SessionCheck(valid=True)

        response = api_client.post("/channels/max/check-session", headers=_headers(agent_id))

        assert response.json()["valid"] is True
        assert response.json()["status"] == "connected"


class TestTriggersApi:
    def test_manual_run_then_throttled(self, api_client, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", "Полис {{policy}} истекает {{end_date}}", days_before=7)
        make_policy(db, client, datetime.now(timezone.utc).date() + timedelta(days=5))
        api_client.app.state.run_throttle = RunThrottle(60)

        first = api_client.post("/triggers/run", headers=_headers(agent_id), json={"is_test_mode": True})
        second = api_client.post("/triggers/run", headers=_headers(agent_id), json={"is_test_mode": True})

        assert first.status_code == 200
        assert first.json()["processed"] == 1
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) > 0
        assert second.json()["message"].startswith("Подождите")
        assert db.query(NotificationLog).count() == 1

    def test_scheduled_run_needs_admin_token(self, api_client, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", "secret")
        assert api_client.post("/triggers/run-scheduled").status_code == 401

        response = api_client.post("/triggers/run-scheduled", headers={"X-Admin-Token": "secret"})
        assert response.status_code == 200


class TestNotificationsApi:
    def _log(self, db, agent_id, status="pending"):
        client = make_client(db, agent_id)
        log = NotificationLog(
            user_id=agent_id,
            client_id=client.id,
            channel="whatsapp",
            message="Ваш полис истекает",
            status=status,
            sent_on=datetime.now(timezone.utc).date(),
        )
        db.add(log)
        db.commit()
        return log

    def test_patch_status(self, api_client, db, agent_id):
        log = self._log(db, agent_id)

        response = api_client.patch(
            f"/notifications/{log.id}/status", headers=_headers(agent_id), json={"status": "sent"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "sent"

    def test_patch_invalid_transition(self, api_client, db, agent_id):
        log = self._log(db, agent_id, status="read")
        response = api_client.patch(
            f"/notifications/{log.id}/status", headers=_headers(agent_id), json={"status": "pending"}
        )
        assert response.status_code == 409

    def test_patch_other_agents_log(self, api_client, db, agent_id):
        log = self._log(db, agent_id)
        response = api_client.patch(
            f"/notifications/{log.id}/status", headers=_headers(uuid.uuid4()), json={"status": "sent"}
        )
        assert response.status_code == 404

    def test_list(self, api_client, db, agent_id):
        self._log(db, agent_id)
        assert len(api_client.get("/notifications", headers=_headers(agent_id)).json()) == 1

    @patch("crm_inbox.routers.notifications.deliver_pending", new_callable=AsyncMock)
    def test_deliver(self, mock_deliver, api_client, agent_id):
        mock_deliver.return_value = 3
        assert api_client.post("/notifications/deliver", headers=_headers(agent_id)).json() == {"sent": 3}


class TestInboxSocket:
    def test_snapshot_and_commands(self, api_client, db, agent_id, monkeypatch, tmp_path):
        monkeypatch.setattr("crm_inbox.routers.inbox_ws.settings.mute_state_path", str(tmp_path / "mute.json"))
        client = make_client(db, agent_id)
        make_message(db, agent_id, client, content="Здравствуйте")

        with api_client.websocket_connect(f"/ws/inbox?user_id={agent_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "conversations"
            assert snapshot["total_unread"] == 1

            ws.send_json({"action": "toggle_mute"})
            assert ws.receive_json() == {"type": "mute", "muted": True}

            ws.send_json({"action": "messages", "client_id": str(client.id)})
            reply = ws.receive_json()
            assert reply["type"] == "messages"
            assert [m["content"] for m in reply["messages"]] == ["Здравствуйте"]

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["type"] == "error"
