"""Deal lifecycle state machine.

The table below is the only authority on legal status changes. It is
pure: given the current status, an event and whether the deal date has
elapsed, it yields the next status or rejects the event. Guards that
depend on who is acting (self-confirmation, party membership) live in the
service layer on top of this table.
"""

from dataclasses import dataclass

from handshake.errors import TransitionRejected
from handshake.protocol import DealEvent, DealStatus, TERMINAL_STATUSES


@dataclass(frozen=True)
class PastDueAware:
    """Target chosen by whether the deal date has already elapsed."""
    if_past_due: DealStatus
    otherwise: DealStatus

    def resolve(self, past_due: bool) -> DealStatus:
        return self.if_past_due if past_due else self.otherwise

    def targets(self) -> set[DealStatus]:
        return {self.if_past_due, self.otherwise}


_RESUME = PastDueAware(DealStatus.PAST_DUE, DealStatus.ACTIVE)

S = DealStatus

# event -> {current status -> next status}
EVENT_TRANSITIONS: dict[DealEvent, dict[DealStatus, DealStatus | PastDueAware]] = {
    DealEvent.INVITE: {S.DRAFT: S.INVITED},
    DealEvent.ACCEPT: {S.INVITED: S.AWAITING_FUNDING},
    DealEvent.FUND: {S.AWAITING_FUNDING: S.ACTIVE},
    DealEvent.PROPOSE_OUTCOME: {
        S.ACTIVE: S.OUTCOME_PROPOSED,
        S.PAST_DUE: S.OUTCOME_PROPOSED,
        S.OUTCOME_PROPOSED: S.OUTCOME_PROPOSED,  # counter-proposal replaces the stored one
    },
    DealEvent.REJECT_OUTCOME: {S.OUTCOME_PROPOSED: _RESUME},
    DealEvent.CONFIRM_OUTCOME: {S.OUTCOME_PROPOSED: S.CONFIRMED},
    DealEvent.COMPLETE: {
        S.ACTIVE: S.COMPLETED,
        S.CONFIRMED: S.COMPLETED,
        S.PAST_DUE: S.COMPLETED,
        S.FROZEN: S.COMPLETED,
    },
    # awaiting_funding is deliberately absent: unfunded deals stay cancellable
    DealEvent.PASTDUE: {S.ACTIVE: S.PAST_DUE},
    DealEvent.FREEZE: {
        S.ACTIVE: S.FROZEN,
        S.PAST_DUE: S.FROZEN,
        S.OUTCOME_PROPOSED: S.FROZEN,
    },
    DealEvent.UNFREEZE: {S.FROZEN: _RESUME},
    DealEvent.CANCEL: {
        S.DRAFT: S.CANCELLED,
        S.INVITED: S.CANCELLED,
        S.AWAITING_FUNDING: S.CANCELLED,
    },
    DealEvent.EXTEND: {S.PAST_DUE: S.ACTIVE},
}

del S


def _build_state_transitions() -> dict[DealStatus, set[DealStatus]]:
    reachable: dict[DealStatus, set[DealStatus]] = {status: set() for status in DealStatus}
    for rows in EVENT_TRANSITIONS.values():
        for current, target in rows.items():
            if isinstance(target, PastDueAware):
                reachable[current] |= target.targets()
            else:
                reachable[current].add(target)
    return reachable


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = _build_state_transitions()


def _check_table():
    for event in DealEvent:
        if not EVENT_TRANSITIONS.get(event):
            raise RuntimeError(f"event {event.value} has no transitions")
    for status in TERMINAL_STATUSES:
        if STATE_TRANSITIONS[status]:
            raise RuntimeError(f"terminal status {status.value} has outgoing transitions")
    for status in DealStatus:
        if status not in TERMINAL_STATUSES and not STATE_TRANSITIONS[status]:
            raise RuntimeError(f"non-terminal status {status.value} is a dead end")

_check_table()
del _check_table


def next_status(current: DealStatus, event: DealEvent, past_due: bool = False) -> DealStatus | None:
    """Next status for ``event`` in ``current``, or None when the event is not legal."""
    target = EVENT_TRANSITIONS[event].get(current)
    if target is None:
        return None
    if isinstance(target, PastDueAware):
        return target.resolve(past_due)
    return target


def transition(current: DealStatus, event: DealEvent, past_due: bool = False) -> DealStatus:
    """Like next_status but raises TransitionRejected instead of returning None."""
    target = next_status(current, event, past_due)
    if target is None:
        raise TransitionRejected(current, event)
    return target


def allowed_events(current: DealStatus) -> list[DealEvent]:
    return [event for event in DealEvent if current in EVENT_TRANSITIONS[event]]


def can_transition_to(current: DealStatus, new: DealStatus) -> bool:
    return new in STATE_TRANSITIONS.get(current, set())


def is_terminal(status: DealStatus) -> bool:
    return status in TERMINAL_STATUSES
