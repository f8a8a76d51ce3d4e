"""Edit session state machine.

    pending ──► running ──► completed | failed | cancelled
       │
       └──► cancelling ──► cancelled

Terminal states never transition again. The store applies every transition as
a conditional update on the expected current status, which is also what keeps
a session from being started by two workers.
"""

from errors import InvalidTransitionError
from models.schemas import SessionStatus

TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

ACTIVE_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.PENDING,
    SessionStatus.RUNNING,
    SessionStatus.CANCELLING,
})

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.CANCELLING}),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.CANCELLING: frozenset({SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def is_terminal(status: SessionStatus) -> bool:
    """Return True for completed, failed and cancelled."""
    return status in TERMINAL_STATUSES


def is_active(status: SessionStatus) -> bool:
    """Return True while a client should keep following the session to its Done chunk."""
    return status in ACTIVE_STATUSES


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def assert_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a status change.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from ``current``.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
