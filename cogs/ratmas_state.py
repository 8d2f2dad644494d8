"""
Ratmas State Machine - The only authority on legal status changes

OPEN -> LOCKED -> MATCHED -> NOTIFIED -> COMPLETED
LOCKED may go back to OPEN (re-open signups before matching).
CANCELLED is reachable from every non-terminal status.

Pure validation: nothing here writes a status. Callers must pass
transition() before persisting a new status.
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from .ratmas_errors import InvalidTransition, StatusConflict
from .ratmas_models import Event, EventStatus

TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.OPEN: frozenset({EventStatus.LOCKED, EventStatus.CANCELLED}),
    EventStatus.LOCKED: frozenset({EventStatus.MATCHED, EventStatus.OPEN, EventStatus.CANCELLED}),
    EventStatus.MATCHED: frozenset({EventStatus.NOTIFIED, EventStatus.CANCELLED}),
    EventStatus.NOTIFIED: frozenset({EventStatus.COMPLETED, EventStatus.CANCELLED}),
    EventStatus.COMPLETED: frozenset(),
    EventStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, allowed in TRANSITIONS.items() if not allowed)
ACTIVE_STATUSES = frozenset(TRANSITIONS) - TERMINAL_STATUSES


def allowed_transitions(current: EventStatus) -> FrozenSet[EventStatus]:
    return TRANSITIONS[EventStatus(current)]


def can_transition(current: EventStatus, requested: EventStatus) -> bool:
    return EventStatus(requested) in allowed_transitions(current)


def transition(current: EventStatus, requested: EventStatus) -> EventStatus:
    """Return the requested status if the move is legal, else raise InvalidTransition"""
    current = EventStatus(current)
    requested = EventStatus(requested)
    if requested not in TRANSITIONS[current]:
        raise InvalidTransition(current, requested)
    return requested


def is_terminal(status: EventStatus) -> bool:
    return EventStatus(status) in TERMINAL_STATUSES


def is_active(status: EventStatus) -> bool:
    return EventStatus(status) in ACTIVE_STATUSES


def require_status(event: Event, expected: EventStatus, action: str) -> None:
    """Gate an operation on the event's current status"""
    if event.status != expected:
        raise StatusConflict(action, event.status)
