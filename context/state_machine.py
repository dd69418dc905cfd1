"""
Status State Machines — Legal transitions for conversation status and
orchestration state.

Two tables are kept here:
  - CONVERSATION_TRANSITIONS: the lifecycle of a conversation record
    (open → pending-human → human-took-over → resolved/closed, …).
    Engine-initiated changes that are not in the table raise
    InvalidTransitionError.
  - ORCHESTRATION_TRANSITIONS: the per-cycle pipeline state shown to
    observers (waiting_for_user → processing → analyzing_intent →
    searching_documents | executing_playbook → waiting_for_user), with
    ``error`` reachable from any in-flight state.

Usage:
    result = conversation_machine.check(ConversationStatus.OPEN, ConversationStatus.RESOLVED)
    if not result:
        ...
    conversation_machine.require(current, target)   # raises on illegal moves
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Generic, TypeVar

from models.schemas import ConversationStatus, OrchestrationState

logger = structlog.get_logger()

S = TypeVar("S", bound=Enum)


class InvalidTransitionError(ValueError):
    def __init__(self, machine: str, from_state: Enum, to_state: Enum):
        super().__init__(
            f"{machine}: illegal transition {from_state.value} → {to_state.value}"
        )
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of checking a transition against a table."""

    def __init__(self, allowed: bool, from_state: Enum, to_state: Enum):
        self.allowed = allowed
        self.from_state = from_state
        self.to_state = to_state

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        arrow = "→" if self.allowed else "↛"
        return f"<Transition {self.from_state.value} {arrow} {self.to_state.value}>"


# ──────────────────────────────────────────────────────────────
#  Status State Machine
# ──────────────────────────────────────────────────────────────

class StatusStateMachine(Generic[S]):
    """
    A flat transition table over an enum. Self-transitions are always
    allowed (re-stamping the same status is a no-op for the lifecycle).
    """

    def __init__(self, name: str, transitions: dict[S, set[S]]):
        errors = self._validate(transitions)
        if errors:
            logger.error("invalid_transition_table", machine=name, errors=errors)
            raise ValueError(f"Invalid transition table '{name}': {'; '.join(errors)}")
        self.name = name
        self._transitions = transitions

    @staticmethod
    def _validate(transitions: dict[S, set[S]]) -> list[str]:
        errors = []
        states = set(transitions)
        for source, targets in transitions.items():
            for target in targets:
                if target not in states:
                    errors.append(f"target '{target.value}' from '{source.value}' has no row")
        return errors

    def allowed_from(self, state: S) -> set[S]:
        return set(self._transitions.get(state, set()))

    def check(self, from_state: S, to_state: S) -> TransitionResult:
        allowed = from_state == to_state or to_state in self._transitions.get(from_state, set())
        return TransitionResult(allowed, from_state, to_state)

    def require(self, from_state: S, to_state: S) -> TransitionResult:
        result = self.check(from_state, to_state)
        if not result:
            raise InvalidTransitionError(self.name, from_state, to_state)
        return result


CS = ConversationStatus

CONVERSATION_TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    CS.OPEN: {CS.PROCESSING, CS.PENDING_HUMAN, CS.RESOLVED, CS.CLOSED},
    CS.PROCESSING: {CS.OPEN, CS.PENDING_HUMAN, CS.RESOLVED, CS.CLOSED},
    CS.PENDING_HUMAN: {CS.HUMAN_TOOK_OVER, CS.OPEN, CS.RESOLVED, CS.CLOSED},
    CS.HUMAN_TOOK_OVER: {CS.OPEN, CS.PENDING_HUMAN, CS.RESOLVED, CS.CLOSED},
    CS.RESOLVED: {CS.OPEN},
    CS.CLOSED: {CS.OPEN},
}

OS = OrchestrationState
_IN_FLIGHT = {OS.PROCESSING, OS.ANALYZING_INTENT, OS.SEARCHING_DOCUMENTS, OS.EXECUTING_PLAYBOOK}

ORCHESTRATION_TRANSITIONS: dict[OrchestrationState, set[OrchestrationState]] = {
    OS.WAITING_FOR_USER: {OS.PROCESSING, OS.COOLDOWN, OS.ERROR},
    OS.COOLDOWN: {OS.PROCESSING, OS.WAITING_FOR_USER, OS.ERROR},
    OS.PROCESSING: {OS.ANALYZING_INTENT, OS.WAITING_FOR_USER, OS.ERROR},
    OS.ANALYZING_INTENT: {OS.SEARCHING_DOCUMENTS, OS.EXECUTING_PLAYBOOK,
                          OS.WAITING_FOR_USER, OS.ERROR},
    OS.SEARCHING_DOCUMENTS: {OS.EXECUTING_PLAYBOOK, OS.WAITING_FOR_USER, OS.ERROR},
    OS.EXECUTING_PLAYBOOK: {OS.WAITING_FOR_USER, OS.ERROR},
    OS.ERROR: {OS.PROCESSING, OS.WAITING_FOR_USER},
}

conversation_machine: StatusStateMachine[ConversationStatus] = StatusStateMachine(
    "conversation_status", CONVERSATION_TRANSITIONS,
)
orchestration_machine: StatusStateMachine[OrchestrationState] = StatusStateMachine(
    "orchestration_state", ORCHESTRATION_TRANSITIONS,
)


def is_in_flight(state: OrchestrationState) -> bool:
    return state in _IN_FLIGHT
