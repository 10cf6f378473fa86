"""
Payout State Machine

Single source of truth for payout status transitions. Every status change
made by `PayoutService` is validated here before it is written.

    requested -> pending_review -> approved -> processing -> completed
    requested | pending_review            -> rejected
    requested | pending_review | approved -> cancelled
"""

from typing import Dict, FrozenSet, List

from .exceptions import InvalidStateTransitionError
from .models import AgentStatus, EarningStatus, PayoutStatus

PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.REQUESTED: frozenset({
        PayoutStatus.PENDING_REVIEW,
        PayoutStatus.APPROVED,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.PENDING_REVIEW: frozenset({
        PayoutStatus.APPROVED,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.APPROVED: frozenset({
        PayoutStatus.PROCESSING,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.PROCESSING: frozenset({
        PayoutStatus.COMPLETED,
    }),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.REJECTED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}

# Statuses whose payout still holds a reservation
RESERVING_STATUSES = frozenset({
    PayoutStatus.REQUESTED,
    PayoutStatus.PENDING_REVIEW,
    PayoutStatus.APPROVED,
    PayoutStatus.PROCESSING,
})

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (PayoutStatus.REQUESTED, PayoutStatus.PENDING_REVIEW): "review",
    (PayoutStatus.REQUESTED, PayoutStatus.APPROVED): "approve",
    (PayoutStatus.PENDING_REVIEW, PayoutStatus.APPROVED): "approve",
    (PayoutStatus.REQUESTED, PayoutStatus.REJECTED): "reject",
    (PayoutStatus.PENDING_REVIEW, PayoutStatus.REJECTED): "reject",
    (PayoutStatus.REQUESTED, PayoutStatus.CANCELLED): "cancel",
    (PayoutStatus.PENDING_REVIEW, PayoutStatus.CANCELLED): "cancel",
    (PayoutStatus.APPROVED, PayoutStatus.CANCELLED): "cancel",
    (PayoutStatus.APPROVED, PayoutStatus.PROCESSING): "process",
    (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED): "complete",
}

EARNING_TRANSITIONS: Dict[EarningStatus, FrozenSet[EarningStatus]] = {
    EarningStatus.PENDING: frozenset({EarningStatus.CONFIRMED, EarningStatus.CANCELLED}),
    EarningStatus.CONFIRMED: frozenset(),
    EarningStatus.CANCELLED: frozenset(),
}


def is_terminal(status: PayoutStatus) -> bool:
    return not PAYOUT_TRANSITIONS[status]


def can_transition(current: PayoutStatus, new: PayoutStatus) -> bool:
    """Check if a transition is allowed. Re-entering the same status never is."""
    return new in PAYOUT_TRANSITIONS.get(current, frozenset())


def get_allowed_transitions(current: PayoutStatus) -> List[PayoutStatus]:
    return sorted(PAYOUT_TRANSITIONS.get(current, frozenset()), key=lambda s: s.value)


def get_transition_action(current: PayoutStatus, new: PayoutStatus) -> str:
    return TRANSITION_ACTIONS.get((current, new), f"{current.value} -> {new.value}")


def validate_transition(current: PayoutStatus, new: PayoutStatus) -> None:
    """Raise InvalidStateTransitionError unless `current -> new` is allowed."""
    if can_transition(current, new):
        return

    if is_terminal(current):
        raise InvalidStateTransitionError(
            f"Payout in '{current.value}' status is final and cannot move to '{new.value}'",
            current=current.value,
            requested=new.value,
        )
    raise InvalidStateTransitionError(
        f"Cannot change payout from '{current.value}' to '{new.value}'. "
        f"Allowed transitions: {', '.join(s.value for s in get_allowed_transitions(current))}",
        current=current.value,
        requested=new.value,
    )


def can_finalize_earning(current: EarningStatus, new: EarningStatus) -> bool:
    return new in EARNING_TRANSITIONS.get(current, frozenset())


AGENT_TRANSITIONS: Dict[AgentStatus, FrozenSet[AgentStatus]] = {
    AgentStatus.PENDING_APPLICATION: frozenset({AgentStatus.APPLICATION_APPROVED}),
    AgentStatus.APPLICATION_APPROVED: frozenset({AgentStatus.CODE_GENERATED}),
    AgentStatus.CODE_GENERATED: frozenset({AgentStatus.CREDENTIALS_SENT}),
    AgentStatus.CREDENTIALS_SENT: frozenset({AgentStatus.ACTIVE}),
    AgentStatus.ACTIVE: frozenset({AgentStatus.SUSPENDED}),
    AgentStatus.SUSPENDED: frozenset({AgentStatus.ACTIVE}),
}


def validate_agent_transition(current: AgentStatus, new: AgentStatus) -> None:
    if new not in AGENT_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransitionError(
            f"Cannot change agent from '{current.value}' to '{new.value}'",
            current=current.value,
            requested=new.value,
        )
