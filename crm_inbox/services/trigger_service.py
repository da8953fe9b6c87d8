import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_inbox.config import settings
from crm_inbox.database import utcnow
from crm_inbox.logging_config import get_logger
from crm_inbox.models import (
    AgentSettings,
    Client,
    NotificationLog,
    NotificationTemplate,
    NotificationTrigger,
    Policy,
    Sale,
)
from crm_inbox.services.channel_store import check_channel_ready
from crm_inbox.services.state_machine import NotificationStatus, TriggerRunState, transition
from crm_inbox.services.template_service import build_template_vars, render_template
from crm_inbox.services.throttle import RunThrottle

logger = get_logger("trigger_service")

EXPIRING_POLICY_STATUSES = ("active", "expiring_soon")
DEFAULT_CHANNEL = "whatsapp"
DEFAULT_AUTO_PROCESS_TIME = "09:00"
DEFAULT_AUTO_PROCESS_DAYS = [1, 2, 3, 4, 5]


class TriggerRunError(Exception):
    """Setup failed before any candidate was looked at."""


@dataclass
class Candidate:
    client: Client
    policy: Optional[Policy] = None
    sale: Optional[Sale] = None

    @property
    def policy_id(self) -> Optional[UUID]:
        return self.policy.id if self.policy else None


@dataclass
class TriggerRunReport:
    user_id: str
    source: str
    is_test_mode: bool
    processed: int = 0
    duplicates: int = 0
    channel_errors: int = 0
    errors: List[str] = field(default_factory=list)
    state: TriggerRunState = TriggerRunState.IDLE

    def advance(self, to_state: TriggerRunState) -> None:
        self.state = transition(self.state, to_state)


def template_channel(template: NotificationTemplate) -> str:
    first = (template.channel or "").split(",")[0].strip()
    return first or DEFAULT_CHANNEL


def _is_birthday(birth_date: date, today: date) -> bool:
    if (birth_date.month, birth_date.day) == (today.month, today.day):
        return True
    # 29 Feb birthdays are greeted on 28 Feb in common years
    return (
        birth_date.month == 2
        and birth_date.day == 29
        and (today.month, today.day) == (2, 28)
        and not calendar.isleap(today.year)
    )


def collect_candidates(db: Session, trigger: NotificationTrigger, today: date) -> List[Candidate]:
    user_id = trigger.user_id
    window_end = today + timedelta(days=max(trigger.days_before or 0, 0))

    if trigger.event_type == "birthday":
        clients = (
            db.query(Client)
            .filter(Client.agent_id == user_id, Client.birth_date.isnot(None), Client.is_company.is_(False))
            .all()
        )
        return [Candidate(client=c) for c in clients if _is_birthday(c.birth_date, today)]

    if trigger.event_type == "policy_expiry":
        rows = (
            db.query(Policy, Client)
            .join(Client, Client.id == Policy.client_id)
            .filter(
                Client.agent_id == user_id,
                Policy.end_date >= today,
                Policy.end_date <= window_end,
                Policy.status.in_(EXPIRING_POLICY_STATUSES),
            )
            .order_by(Policy.end_date)
            .all()
        )
        return [Candidate(client=client, policy=policy) for policy, client in rows]

    if trigger.event_type == "debt_reminder":
        rows = (
            db.query(Sale, Client)
            .join(Client, Client.id == Sale.client_id)
            .filter(
                Client.agent_id == user_id,
                Sale.debt_status == "unpaid",
                Sale.installment_due_date >= today,
                Sale.installment_due_date <= window_end,
            )
            .order_by(Sale.installment_due_date)
            .all()
        )
        return [Candidate(client=client, sale=sale) for sale, client in rows]

    logger.warning("Unknown trigger event type", extra={"context": {"trigger_id": str(trigger.id), "event_type": trigger.event_type}})
    return []


def is_already_notified(db: Session, candidate: Candidate, template_id: UUID, today: date) -> bool:
    """Policy notices go out once per policy; everything else once per calendar day."""
    query = db.query(NotificationLog.id).filter(
        NotificationLog.client_id == candidate.client.id,
        NotificationLog.template_id == template_id,
    )
    if candidate.policy_id is not None:
        query = query.filter(NotificationLog.policy_id == candidate.policy_id)
    else:
        query = query.filter(NotificationLog.policy_id.is_(None), NotificationLog.sent_on == today)
    return query.first() is not None


def _load_triggers(db: Session, user_id: UUID) -> List[Tuple[NotificationTrigger, NotificationTemplate]]:
    try:
        triggers = (
            db.query(NotificationTrigger)
            .filter(NotificationTrigger.user_id == user_id, NotificationTrigger.is_active.is_(True))
            .all()
        )
        template_ids = {t.template_id for t in triggers}
        templates = {}
        if template_ids:
            templates = {
                t.id: t for t in db.query(NotificationTemplate).filter(NotificationTemplate.id.in_(template_ids)).all()
            }
    except SQLAlchemyError as e:
        raise TriggerRunError(f"Failed to load triggers: {e}") from e

    pairs = []
    for trigger in triggers:
        template = templates.get(trigger.template_id)
        if template is None:
            logger.warning("Trigger references a missing template", extra={"context": {"trigger_id": str(trigger.id)}})
            continue
        pairs.append((trigger, template))
    return pairs


def run_triggers_report(
    db: Session,
    user_id: UUID,
    is_test_mode: bool,
    source: str = "manual",
    throttle: Optional[RunThrottle] = None,
    now: Optional[datetime] = None,
) -> TriggerRunReport:
    """Evaluate the agent's active triggers and write one log row per new occasion.

    Manual runs go through ``throttle`` first (TriggerThrottled propagates and
    nothing is read). Per-candidate problems are recorded and the batch goes
    on; only a failure to load the triggers raises TriggerRunError. Nothing is
    delivered here, see notification_log_service.deliver_pending.
    """
    if source == "manual" and throttle is not None:
        throttle.acquire(user_id)

    now = now or utcnow()
    today = now.date()
    report = TriggerRunReport(user_id=str(user_id), source=source, is_test_mode=is_test_mode)
    readiness: Dict[str, Tuple[bool, Optional[str]]] = {}

    pairs = _load_triggers(db, user_id)

    for trigger, template in pairs:
        report.advance(TriggerRunState.COLLECTING_CANDIDATES)
        try:
            candidates = collect_candidates(db, trigger, today)
        except SQLAlchemyError as e:
            db.rollback()
            report.errors.append(f"Trigger {trigger.id}: {e}")
            continue

        channel = template_channel(template)
        for candidate in candidates:
            report.advance(TriggerRunState.PER_CLIENT_DEDUP_CHECK)
            try:
                if is_already_notified(db, candidate, template.id, today):
                    report.duplicates += 1
                    continue

                report.advance(TriggerRunState.LOGGING)
                if channel not in readiness:
                    readiness[channel] = check_channel_ready(db, user_id, channel)
                ready, channel_error = readiness[channel]

                if not ready:
                    status = NotificationStatus.ERROR
                    report.channel_errors += 1
                elif is_test_mode:
                    status = NotificationStatus.TEST_PREPARED
                else:
                    status = NotificationStatus.PENDING

                variables = build_template_vars(candidate.client, candidate.policy, candidate.sale)
                log = NotificationLog(
                    user_id=user_id,
                    client_id=candidate.client.id,
                    template_id=template.id,
                    trigger_id=trigger.id,
                    policy_id=candidate.policy_id,
                    channel=channel,
                    message=render_template(template.message_template, variables),
                    template_title=template.title,
                    status=status.value,
                    source=source,
                    error_message=channel_error if not ready else None,
                    sent_at=now,
                    sent_on=today,
                )
                db.add(log)
                db.commit()
                report.processed += 1
            except IntegrityError:
                # a concurrent run logged the same occasion first
                db.rollback()
                report.duplicates += 1
            except Exception as e:
                db.rollback()
                report.errors.append(f"Client {candidate.client.id}: {e}")
                logger.error(
                    "Trigger candidate failed",
                    extra={"context": {"trigger_id": str(trigger.id), "client_id": str(candidate.client.id), "error": str(e)}},
                )

    if report.state != TriggerRunState.IDLE:
        report.advance(TriggerRunState.IDLE)

    logger.info(
        "Triggers processed",
        extra={
            "context": {
                "user_id": str(user_id),
                "source": source,
                "test_mode": is_test_mode,
                "processed": report.processed,
                "duplicates": report.duplicates,
                "channel_errors": report.channel_errors,
                "errors": len(report.errors),
            }
        },
    )
    return report


def run_triggers(
    db: Session,
    user_id: UUID,
    is_test_mode: bool,
    source: str = "manual",
    throttle: Optional[RunThrottle] = None,
    now: Optional[datetime] = None,
) -> int:
    """Run the agent's triggers and return how many log rows were written."""
    return run_triggers_report(db, user_id, is_test_mode, source, throttle, now).processed


def is_within_schedule_window(scheduled_time: str, now: datetime, window_minutes: Optional[int] = None) -> bool:
    """True during the ``window_minutes`` that follow ``HH:MM`` (UTC)."""
    window_minutes = window_minutes or settings.schedule_window_minutes
    try:
        hour, minute = (int(part) for part in scheduled_time.split(":")[:2])
    except ValueError:
        hour, minute = (int(part) for part in DEFAULT_AUTO_PROCESS_TIME.split(":"))
    diff = (now.hour * 60 + now.minute) - (hour * 60 + minute)
    return 0 <= diff < window_minutes


def is_due_for_scheduled_run(agent_settings: Optional[AgentSettings], now: datetime) -> bool:
    today = now.date()
    scheduled_time = DEFAULT_AUTO_PROCESS_TIME
    days = DEFAULT_AUTO_PROCESS_DAYS
    if agent_settings is not None:
        if agent_settings.last_auto_run_date == today:
            return False
        scheduled_time = agent_settings.auto_process_time or DEFAULT_AUTO_PROCESS_TIME
        days = agent_settings.auto_process_days or DEFAULT_AUTO_PROCESS_DAYS
    if today.isoweekday() not in days:
        return False
    return is_within_schedule_window(scheduled_time, now)


async def run_scheduled(
    db: Session,
    now: Optional[datetime] = None,
    deliver: Optional[Callable[[Session, UUID], Awaitable[int]]] = None,
) -> Dict[str, int]:
    """Scheduled pass over every agent with active triggers.

    Each agent runs at most once per day inside its configured window. When
    the agent is not in test mode, ``deliver`` sends the freshly prepared rows.
    """
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.date()

    user_ids = [
        row[0]
        for row in db.query(NotificationTrigger.user_id).filter(NotificationTrigger.is_active.is_(True)).distinct().all()
    ]

    results: Dict[str, int] = {}
    for user_id in user_ids:
        agent_settings = db.query(AgentSettings).filter(AgentSettings.user_id == user_id).first()
        if not is_due_for_scheduled_run(agent_settings, now):
            continue

        is_test_mode = agent_settings.notification_test_mode if agent_settings is not None else True
        try:
            report = run_triggers_report(db, user_id, is_test_mode, source="scheduled", now=now)
        except TriggerRunError as e:
            logger.error("Scheduled trigger run failed", extra={"context": {"user_id": str(user_id), "error": str(e)}})
            continue
        results[str(user_id)] = report.processed

        if agent_settings is None:
            agent_settings = AgentSettings(user_id=user_id, notification_test_mode=True)
            db.add(agent_settings)
        agent_settings.last_auto_run_date = today
        db.commit()

        if not is_test_mode and deliver is not None:
            await deliver(db, user_id)

    return results
