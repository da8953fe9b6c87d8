import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_channel, make_client, make_policy, make_sale, make_trigger
from sqlalchemy.exc import OperationalError

from crm_inbox.models import AgentSettings, NotificationLog, NotificationTemplate
from crm_inbox.services.state_machine import NotificationStatus
from crm_inbox.services.throttle import RunThrottle, TriggerThrottled
from crm_inbox.services.trigger_service import (
    TriggerRunError,
    _is_birthday,
    is_due_for_scheduled_run,
    is_within_schedule_window,
    run_scheduled,
    run_triggers,
    run_triggers_report,
    template_channel,
)

# a Monday
NOW = datetime(2026, 10, 19, 9, 10, tzinfo=timezone.utc)
TODAY = NOW.date()

EXPIRY_TEMPLATE = "{{name}}, ваш полис {{policy}} на {{car}} ({{plate}}) истекает {{end_date}}"


class TestPolicyExpiry:
    def test_policy_in_window_logged_once(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        policy = make_policy(db, client, TODAY + timedelta(days=5))

        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW) == 1

        log = db.query(NotificationLog).one()
        assert log.policy_id == policy.id
        assert log.status == "[ТЕСТ] Подготовлено"
        assert log.channel == "whatsapp"
        assert log.message == "Иван, ваш полис ОСАГО ХХХ 0123456789 на Kia Rio (А 123 ВС 77) истекает 24.10.2026"

        report = run_triggers_report(db, agent_id, is_test_mode=True, now=NOW + timedelta(days=1))
        assert report.processed == 0
        assert report.duplicates == 1
        assert db.query(NotificationLog).count() == 1

    def test_policy_outside_window_ignored(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        make_policy(db, client, TODAY + timedelta(days=10))
        make_policy(db, client, TODAY + timedelta(days=3), status="cancelled")
        make_policy(db, client, TODAY - timedelta(days=1))

        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW) == 0

    def test_live_mode_prepares_pending(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        make_policy(db, client, TODAY + timedelta(days=2))

        run_triggers(db, agent_id, is_test_mode=False, now=NOW)

        assert db.query(NotificationLog).one().status == NotificationStatus.PENDING.value

    def test_channel_not_ready_logged_as_error_and_batch_continues(self, db, agent_id):
        anna = make_client(db, agent_id, first_name="Анна", phone="+7001")
        oleg = make_client(db, agent_id, first_name="Олег", phone="+7002")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        make_policy(db, anna, TODAY + timedelta(days=1))
        make_policy(db, oleg, TODAY + timedelta(days=2), policy_number="999")

        report = run_triggers_report(db, agent_id, is_test_mode=False, now=NOW)

        assert report.processed == 2
        assert report.channel_errors == 2
        logs = db.query(NotificationLog).all()
        assert {log.status for log in logs} == {"error"}
        assert logs[0].error_message == "Канал whatsapp не настроен или отключён"

    def test_concurrent_insert_counted_as_duplicate(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        make_policy(db, client, TODAY + timedelta(days=5))
        run_triggers(db, agent_id, is_test_mode=True, now=NOW)

        with patch("crm_inbox.services.trigger_service.is_already_notified", return_value=False):
            report = run_triggers_report(db, agent_id, is_test_mode=True, now=NOW)

        assert report.processed == 0
        assert report.duplicates == 1
        assert db.query(NotificationLog).count() == 1


class TestBirthday:
    def test_once_per_day(self, db, agent_id):
        make_client(db, agent_id, birth_date=date(1990, 10, 19))
        make_client(db, agent_id, phone="+7003", birth_date=date(1990, 10, 20))
        make_client(db, agent_id, phone="+7004", birth_date=date(1990, 10, 19), is_company=True)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "birthday", "С днём рождения, {name}!")

        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW) == 1
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW + timedelta(hours=3)) == 0
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW.replace(year=2027)) == 1

        log = db.query(NotificationLog).first()
        assert log.message == "С днём рождения, Иван!"
        assert log.policy_id is None

    def test_leap_day_birthday(self):
        assert _is_birthday(date(2000, 2, 29), date(2027, 2, 28)) is True
        assert _is_birthday(date(2000, 2, 29), date(2028, 2, 28)) is False
        assert _is_birthday(date(2000, 2, 29), date(2028, 2, 29)) is True


class TestDebtReminder:
    def test_debt_rendered(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "debt_reminder", "Остаток {{debt}} руб. до {{due_date}}", days_before=3)
        make_sale(db, client, TODAY + timedelta(days=3))

        run_triggers(db, agent_id, is_test_mode=True, now=NOW)

        assert db.query(NotificationLog).one().message == "Остаток 15 000 руб. до 22.10.2026"

    def test_daily_reminders_across_window(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "debt_reminder", "Остаток {{debt}} руб.", days_before=3)
        make_sale(db, client, TODAY + timedelta(days=3))

        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW) == 1
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW + timedelta(hours=5)) == 0
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW + timedelta(days=1)) == 1
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW + timedelta(days=2)) == 1
        # past the due date the sale leaves the window
        assert run_triggers(db, agent_id, is_test_mode=True, now=NOW + timedelta(days=4)) == 0

        sent_on = sorted(log.sent_on for log in db.query(NotificationLog).all())
        assert sent_on == [TODAY, TODAY + timedelta(days=1), TODAY + timedelta(days=2)]


class TestThrottle:
    def test_manual_runs_throttled(self, db, agent_id):
        throttle = RunThrottle(60)
        run_triggers(db, agent_id, is_test_mode=True, throttle=throttle, now=NOW)

        with pytest.raises(TriggerThrottled):
            run_triggers(db, agent_id, is_test_mode=True, throttle=throttle, now=NOW)

    def test_scheduled_runs_ignore_throttle(self, db, agent_id):
        throttle = RunThrottle(60)
        run_triggers(db, agent_id, is_test_mode=True, throttle=throttle, now=NOW)
        run_triggers(db, agent_id, is_test_mode=True, source="scheduled", throttle=throttle, now=NOW)


class TestSetupFailure:
    def test_load_failure_raises(self, db_session, agent_id):
        db_session.query.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))
        with pytest.raises(TriggerRunError):
            run_triggers_report(db_session, agent_id, is_test_mode=True, now=NOW)


class TestTemplateChannel:
    def test_first_listed_channel_wins(self):
        assert template_channel(NotificationTemplate(channel="telegram, whatsapp")) == "telegram"
        assert template_channel(NotificationTemplate(channel="")) == "whatsapp"


class TestSchedule:
    def test_window(self):
        assert is_within_schedule_window("09:00", NOW, 30) is True
        assert is_within_schedule_window("09:00", NOW.replace(hour=9, minute=30), 30) is False
        assert is_within_schedule_window("09:15", NOW, 30) is False
        assert is_within_schedule_window("garbage", NOW, 30) is True

    def test_due_checks(self):
        settings_row = AgentSettings(auto_process_time="09:00", auto_process_days=[1, 2, 3, 4, 5])
        assert is_due_for_scheduled_run(settings_row, NOW) is True
        assert is_due_for_scheduled_run(settings_row, NOW + timedelta(days=5)) is False  # Saturday

        settings_row.last_auto_run_date = TODAY
        assert is_due_for_scheduled_run(settings_row, NOW) is False

    def test_run_scheduled_once_per_day(self, db, agent_id):
        client = make_client(db, agent_id)
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "policy_expiry", EXPIRY_TEMPLATE, days_before=7)
        make_policy(db, client, TODAY + timedelta(days=5))
        db.add(AgentSettings(user_id=agent_id, notification_test_mode=False, auto_process_time="09:00"))
        db.commit()
        deliver = AsyncMock(return_value=1)

        first = asyncio.run(run_scheduled(db, now=NOW, deliver=deliver))
        second = asyncio.run(run_scheduled(db, now=NOW + timedelta(minutes=5), deliver=deliver))

        assert first == {str(agent_id): 1}
        assert second == {}
        deliver.assert_awaited_once_with(db, agent_id)
        log = db.query(NotificationLog).one()
        assert log.source == "scheduled"
        assert log.status == "pending"
        assert db.query(AgentSettings).one().last_auto_run_date == TODAY

    def test_agent_without_settings_runs_in_test_mode(self, db, agent_id):
        client = make_client(db, agent_id, birth_date=date(1985, 10, 19))
        make_channel(db, agent_id, "whatsapp")
        make_trigger(db, agent_id, "birthday", "С днём рождения!")
        deliver = AsyncMock()

        asyncio.run(run_scheduled(db, now=NOW, deliver=deliver))

        deliver.assert_not_called()
        assert db.query(NotificationLog).one().status == "[ТЕСТ] Подготовлено"
        assert db.query(AgentSettings).one().notification_test_mode is True
