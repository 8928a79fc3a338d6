"""
Delivery request lifecycle.

Explicit adjacency table of legal status transitions. Forward progress is
strictly linear; cancellation is allowed from every non-terminal state
except DELIVERED.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import InvalidTransition


class RequestStatus(str, Enum):
    """Lifecycle states of a delivery request."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


INITIAL_STATUS = RequestStatus.DRAFT

TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.SUBMITTED, RequestStatus.CANCELLED}),
    RequestStatus.SUBMITTED: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED}),
    RequestStatus.ASSIGNED: frozenset({RequestStatus.PICKED_UP, RequestStatus.CANCELLED}),
    RequestStatus.PICKED_UP: frozenset({RequestStatus.DELIVERED, RequestStatus.CANCELLED}),
    RequestStatus.DELIVERED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def coerce_status(value: object) -> Optional[RequestStatus]:
    """Return the matching RequestStatus, or None for anything unrecognised."""
    if isinstance(value, RequestStatus):
        return value
    try:
        return RequestStatus(value)
    except (ValueError, TypeError):
        return None


def can_transition(from_status: object, to_status: object) -> bool:
    """Check whether a status change follows an edge of the lifecycle table.

    Total over any input: unknown values have no valid transitions and
    self-transitions are never valid.
    """
    source = coerce_status(from_status)
    target = coerce_status(to_status)
    if source is None or target is None:
        return False
    return target in TRANSITIONS[source]


def allowed_transitions(status: object) -> FrozenSet[RequestStatus]:
    source = coerce_status(status)
    if source is None:
        return frozenset()
    return TRANSITIONS[source]


def is_terminal(status: object) -> bool:
    source = coerce_status(status)
    return source is not None and not TRANSITIONS[source]


def replay_status(event_types: Iterable[str]) -> RequestStatus:
    """Fold status-bearing event types over the initial state.

    Event types that are not lifecycle states (such as NOTE) are skipped.

    Raises:
        InvalidTransition: If the history contains an illegal step
    """
    current = INITIAL_STATUS
    for event_type in event_types:
        target = coerce_status(event_type)
        if target is None:
            continue
        if not can_transition(current, target):
            raise InvalidTransition(current, target, f"Event history replays an illegal step {current.value} -> {target.value}")
        current = target
    return current
