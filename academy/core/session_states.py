from __future__ import annotations

from enum import Enum

from academy.core.errors import InvalidTransition


class SessionStatus(str, Enum):
    SCHEDULED = 'scheduled'
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETE = 'complete'
    CANCELLED = 'cancelled'
    ABSENCE = 'absence'
    RESCHEDULED = 'rescheduled'


class SessionAction(str, Enum):
    INITIATE = 'initiate'
    START = 'start'
    END = 'end'
    MARK_ABSENCE = 'mark_absence'
    LEAVE = 'leave'
    RESCHEDULE = 'reschedule'


class AttendanceStatus(str, Enum):
    SCHEDULED = 'scheduled'
    EXPECTED = 'expected'
    PRESENT = 'present'
    ABSENT = 'absent'


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETE, SessionStatus.CANCELLED, SessionStatus.ABSENCE})
BILLABLE_STATUSES = frozenset({SessionStatus.COMPLETE, SessionStatus.ABSENCE})

# A persisted ``rescheduled`` row is still waiting for its new slot to be bound,
# so it accepts the same reschedule transition as ``scheduled``.
TRANSITIONS: dict[tuple[SessionStatus, SessionAction], SessionStatus] = {
    (SessionStatus.SCHEDULED, SessionAction.INITIATE): SessionStatus.PENDING,
    (SessionStatus.PENDING, SessionAction.START): SessionStatus.RUNNING,
    (SessionStatus.RUNNING, SessionAction.END): SessionStatus.COMPLETE,
    (SessionStatus.RUNNING, SessionAction.MARK_ABSENCE): SessionStatus.ABSENCE,
    (SessionStatus.SCHEDULED, SessionAction.LEAVE): SessionStatus.CANCELLED,
    (SessionStatus.SCHEDULED, SessionAction.RESCHEDULE): SessionStatus.SCHEDULED,
    (SessionStatus.RESCHEDULED, SessionAction.RESCHEDULE): SessionStatus.SCHEDULED,
}


def coerce_status(value: str | SessionStatus) -> SessionStatus:
    return value if isinstance(value, SessionStatus) else SessionStatus(value)


def coerce_action(value: str | SessionAction) -> SessionAction:
    try:
        return value if isinstance(value, SessionAction) else SessionAction(value)
    except ValueError as exc:
        raise ValueError(f'Unknown session action {value}') from exc


def next_status(current: str | SessionStatus, action: str | SessionAction) -> SessionStatus:
    """The only place that decides whether a session may move.

    Raises InvalidTransition for every (status, action) pair not in TRANSITIONS,
    which includes re-requesting an action that has already been applied.
    """
    status = coerce_status(current)
    requested = coerce_action(action)
    target = TRANSITIONS.get((status, requested))
    if target is None:
        raise InvalidTransition(status.value, requested.value)
    return target


def is_terminal(status: str | SessionStatus) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def allowed_actions(status: str | SessionStatus) -> list[str]:
    current = coerce_status(status)
    return [action.value for (source, action) in TRANSITIONS if source == current]
