"""Orchestration phase transitions enforced by the orchestrator."""

from gatherpay.common.errors import InvalidTransition

PENDING = "PENDING"
AWAITING_VALIDATIONS = "AWAITING_VALIDATIONS"
TIMED_OUT = "TIMED_OUT"
DECIDED = "DECIDED"
EXECUTING = "EXECUTING"
COMPLETED = "COMPLETED"
REJECTED = "REJECTED"
FAILED = "FAILED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    # PENDING -> REJECTED/FAILED only through operator resolution of a dispatch dead letter.
    PENDING: {AWAITING_VALIDATIONS, REJECTED, FAILED},
    AWAITING_VALIDATIONS: {DECIDED, TIMED_OUT},
    TIMED_OUT: {DECIDED},
    DECIDED: {EXECUTING, REJECTED},
    EXECUTING: {COMPLETED, REJECTED, FAILED},
    # FAILED -> COMPLETED when a dead-lettered commit later succeeds.
    FAILED: {COMPLETED, REJECTED},
    COMPLETED: set(),
    REJECTED: set(),
}

# Phases in which validator verdicts still count towards the decision.
COLLECTING_PHASES = {PENDING, AWAITING_VALIDATIONS}
TERMINAL_PHASES = {COMPLETED, REJECTED}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
