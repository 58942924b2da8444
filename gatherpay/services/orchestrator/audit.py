"""Append-only audit trail of orchestration events.

Events are written inside the same database transaction as the state change
they describe. The orchestrator only ever writes here; nothing reads the trail
back to make a control-flow decision.
"""

from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select

from gatherpay.common.db import utcnow
from gatherpay.services.orchestrator.models import AuditEvent

DISPATCHED = "dispatched"
VERDICT_RECEIVED = "verdict-received"
IGNORED_LATE = "ignored-late"
IGNORED_STALE = "ignored-stale"
TIMED_OUT = "timed-out"
DECISION_MADE = "decision-made"
COMMITTED = "committed"
COMMIT_FAILED = "commit-failed"
RELEASED = "released"
REJECTED = "rejected"
ORPHAN_RELEASED = "orphan-released"
DEAD_LETTERED = "dead-lettered"
MANUAL_REVIEW = "manual-review"
RESOLVED = "resolved"


class AuditWriter:
    def append(self, db, transaction_id: str, event_type: str, payload: dict[str, Any] | None = None) -> AuditEvent:
        """Add the next event for `transaction_id` to the caller's session."""

        last = db.execute(
            select(func.max(AuditEvent.sequence)).where(AuditEvent.transaction_id == transaction_id)
        ).scalar_one()
        event = AuditEvent(
            transaction_id=transaction_id,
            sequence=(last or 0) + 1,
            event_type=event_type,
            payload=payload or {},
        )
        db.add(event)
        db.flush()
        return event

    def history(self, db, transaction_id: str) -> list[AuditEvent]:
        return (
            db.execute(
                select(AuditEvent).where(AuditEvent.transaction_id == transaction_id).order_by(AuditEvent.sequence)
            )
            .scalars()
            .all()
        )

    def purge_older_than(self, db, retention_days: int) -> int:
        """Drop events past the retention window; returns rows removed."""

        cutoff = utcnow() - timedelta(days=retention_days)
        result = db.execute(delete(AuditEvent).where(AuditEvent.created_at < cutoff))
        return result.rowcount or 0
