"""Version-guarded writes to `Orchestration` rows."""

from sqlalchemy import update

from gatherpay.common.db import utcnow
from gatherpay.common.errors import ConcurrencyConflict
from gatherpay.common.logging import logger
from gatherpay.common.state_machine import TERMINAL_PHASES, validate_transition
from gatherpay.services.orchestrator.models import Orchestration


def _guarded_update(db, state: Orchestration, new_phase: str, values: dict) -> None:
    current_version = state.state_version
    result = db.execute(
        update(Orchestration)
        .where(
            Orchestration.transaction_id == state.transaction_id,
            Orchestration.phase == state.phase,
            Orchestration.state_version == current_version,
        )
        .values(phase=new_phase, state_version=current_version + 1, updated_at=utcnow(), **values)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"optimistic concurrency conflict for transaction {state.transaction_id} "
            f"(expected {state.phase} v{current_version})"
        )
    state.phase = new_phase
    state.state_version = current_version + 1
    for key, value in values.items():
        setattr(state, key, value)


def transition(db, state: Orchestration, new_phase: str, **values) -> None:
    """Apply one validated phase transition with optimistic concurrency.

    The write is guarded by `(transaction_id, phase, state_version)`, so a stale
    writer (a second coordinator, a recovering process) fails instead of
    deciding twice. Extra column values are written in the same statement.
    """

    validate_transition(state.phase, new_phase)
    from_phase = state.phase
    if new_phase in TERMINAL_PHASES:
        values.setdefault("archived_at", utcnow())
    _guarded_update(db, state, new_phase, values)
    logger.info(
        "phase_transition transaction_id=%s from=%s to=%s version=%s",
        state.transaction_id,
        from_phase,
        new_phase,
        state.state_version,
    )


def update_in_phase(db, state: Orchestration, **values) -> None:
    """Write columns without changing phase, under the same version guard."""

    _guarded_update(db, state, state.phase, values)
