from enum import Enum
from typing import Dict, List


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    ERROR = "error"
    TEST_PREPARED = "[ТЕСТ] Подготовлено"


class TriggerRunState(str, Enum):
    IDLE = "idle"
    COLLECTING_CANDIDATES = "collecting_candidates"
    PER_CLIENT_DEDUP_CHECK = "per_client_dedup_check"
    LOGGING = "logging"


NOTIFICATION_TRANSITIONS: Dict[NotificationStatus, List[NotificationStatus]] = {
    NotificationStatus.PENDING: [NotificationStatus.SENT, NotificationStatus.ERROR],
    NotificationStatus.SENT: [NotificationStatus.DELIVERED, NotificationStatus.READ, NotificationStatus.ERROR],
    NotificationStatus.DELIVERED: [NotificationStatus.READ],
    NotificationStatus.READ: [],
    NotificationStatus.ERROR: [],
    NotificationStatus.TEST_PREPARED: [],
}

TRIGGER_RUN_TRANSITIONS: Dict[TriggerRunState, List[TriggerRunState]] = {
    TriggerRunState.IDLE: [TriggerRunState.COLLECTING_CANDIDATES],
    TriggerRunState.COLLECTING_CANDIDATES: [
        TriggerRunState.PER_CLIENT_DEDUP_CHECK,
        TriggerRunState.COLLECTING_CANDIDATES,
        TriggerRunState.IDLE,
    ],
    TriggerRunState.PER_CLIENT_DEDUP_CHECK: [
        TriggerRunState.PER_CLIENT_DEDUP_CHECK,
        TriggerRunState.LOGGING,
        TriggerRunState.COLLECTING_CANDIDATES,
        TriggerRunState.IDLE,
    ],
    TriggerRunState.LOGGING: [
        TriggerRunState.PER_CLIENT_DEDUP_CHECK,
        TriggerRunState.COLLECTING_CANDIDATES,
        TriggerRunState.IDLE,
    ],
}

_TABLES = {
    NotificationStatus: NOTIFICATION_TRANSITIONS,
    TriggerRunState: TRIGGER_RUN_TRANSITIONS,
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Enum, to_state: Enum):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: Enum, to_state: Enum) -> bool:
    """Check if transition is valid."""
    table = _TABLES.get(type(from_state), {})
    return to_state in table.get(from_state, [])


def transition(from_state: Enum, to_state: Enum) -> Enum:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_final(status: NotificationStatus) -> bool:
    return not NOTIFICATION_TRANSITIONS.get(status)
