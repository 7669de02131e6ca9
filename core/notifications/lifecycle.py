"""
Notification lifecycle state machine.

    PENDING -> PROCESSING -> SENT -> DELIVERED -> READ
       |          |   ^
       |          v   |
       +------> QUEUED ----> AGGREGATED
       +------> SCHEDULED
       +------> CANCELLED / FAILED

QUEUED covers both rate-limit/backoff waits (scheduled_for set) and items held
in an aggregation bucket (scheduled_for unset).
"""

from core.enums import NotificationStatus as S
from core.notifications.errors import InvalidTransitionError

TRANSITIONS: dict[S, frozenset[S]] = {
    S.pending: frozenset(
        {S.processing, S.scheduled, S.queued, S.failed, S.cancelled}
    ),
    S.scheduled: frozenset(
        {S.scheduled, S.processing, S.queued, S.failed, S.cancelled}
    ),
    S.queued: frozenset(
        {S.queued, S.processing, S.scheduled, S.aggregated, S.failed}
    ),
    S.processing: frozenset(
        {S.processing, S.sent, S.delivered, S.queued, S.failed}
    ),
    S.sent: frozenset({S.delivered, S.read}),
    S.delivered: frozenset({S.read}),
    S.read: frozenset(),
    S.failed: frozenset(),
    S.cancelled: frozenset(),
    S.aggregated: frozenset(),
}

TERMINAL_STATES = frozenset({S.delivered, S.read, S.failed, S.cancelled, S.aggregated})

# States a delivery worker may pick a record up from
DELIVERABLE_STATES = frozenset({S.pending, S.scheduled, S.queued, S.processing})


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: S, target: S) -> None:
    """
    Raises:
        InvalidTransitionError: If target is not reachable from current
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def is_terminal(status: S) -> bool:
    return status in TERMINAL_STATES


def sources_for(target: S) -> frozenset[S]:
    """All states from which target may be entered (for conditional updates)."""
    return frozenset(state for state, targets in TRANSITIONS.items() if target in targets)
