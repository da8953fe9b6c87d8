import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crm_inbox.database import init_db
from crm_inbox.models import (
    ChannelSetting,
    Client,
    Message,
    NotificationTemplate,
    NotificationTrigger,
    Policy,
    Sale,
)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def agent_id():
    return uuid.uuid4()


def make_client(db, agent_id, **kwargs):
    data = {
        "agent_id": agent_id,
        "first_name": "Иван",
        "last_name": "Петров",
        "phone": "+79001234567",
        "messenger_ids": {},
    }
    data.update(kwargs)
    client = Client(**data)
    db.add(client)
    db.commit()
    return client


def make_message(db, agent_id, client, **kwargs):
    data = {
        "client_id": client.id,
        "user_id": agent_id,
        "direction": "in",
        "channel": "whatsapp",
        "content": "Здравствуйте",
        "is_read": False,
        "delivery_status": "sent",
        "created_at": datetime.now(timezone.utc),
    }
    data.update(kwargs)
    message = Message(**data)
    db.add(message)
    db.commit()
    return message


def make_channel(db, agent_id, channel="whatsapp", is_active=True, status="connected", config=None):
    setting = ChannelSetting(
        user_id=agent_id,
        channel=channel,
        is_active=is_active,
        status=status,
        config=config if config is not None else {},
    )
    db.add(setting)
    db.commit()
    return setting


def make_trigger(db, agent_id, event_type, message_template, days_before=0, channel="whatsapp", title="Напоминание"):
    template = NotificationTemplate(
        user_id=agent_id,
        title=title,
        message_template=message_template,
        channel=channel,
    )
    db.add(template)
    db.flush()
    trigger = NotificationTrigger(
        user_id=agent_id,
        event_type=event_type,
        template_id=template.id,
        days_before=days_before,
        is_active=True,
    )
    db.add(trigger)
    db.commit()
    return template, trigger


def make_policy(db, client, end_date, **kwargs):
    data = {
        "client_id": client.id,
        "agent_id": client.agent_id,
        "policy_type": "ОСАГО",
        "policy_series": "ХХХ",
        "policy_number": "0123456789",
        "vehicle_model": "Kia Rio",
        "vehicle_number": "А123ВС77",
        "start_date": date(end_date.year - 1, end_date.month, 1),
        "end_date": end_date,
        "status": "active",
    }
    data.update(kwargs)
    policy = Policy(**data)
    db.add(policy)
    db.commit()
    return policy


def make_sale(db, client, due_date, total=Decimal("25000"), paid=Decimal("10000")):
    sale = Sale(
        client_id=client.id,
        agent_id=client.agent_id,
        total_amount=total,
        amount_paid=paid,
        debt_status="unpaid",
        installment_due_date=due_date,
    )
    db.add(sale)
    db.commit()
    return sale


@pytest.fixture
def api_client(session_factory):
    from fastapi.testclient import TestClient

    from crm_inbox.database import get_db
    from crm_inbox.main import app

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.state.session_factory = session_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        del app.state.session_factory
