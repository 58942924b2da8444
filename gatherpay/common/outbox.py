"""Reusable helpers for transactional outbox publishing.

These utilities are model-agnostic so any service can reuse the same
claim/requeue/mark logic against its own `outbox_events` table. Rows are written
in the same database transaction as the state they announce, and only
published after that transaction commits.
"""

from datetime import timedelta

from sqlalchemy import delete, func, or_, select, update

from gatherpay.common.db import ensure_utc, utcnow
from gatherpay.common.events import EventEnvelope
from gatherpay.common.logging import logger
from gatherpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    rows = db.execute(
        select(table.c.id, table.c.topic, table.c.partition_key, table.c.payload)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()
    if not rows:
        return []
    db.execute(
        update(table).where(table.c.id.in_([row.id for row in rows])).values(status="PROCESSING", sent_at=now)
    )
    return [
        {"id": row.id, "topic": row.topic, "key": row.partition_key, "payload": row.payload} for row in rows
    ]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=utcnow())
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def purge_sent_outbox(db, outbox_model, older_than) -> int:
    """Delete rows delivered before `older_than`; undelivered rows are never touched."""

    table = outbox_model.__table__
    result = db.execute(delete(table).where(table.c.status == "SENT", table.c.sent_at < older_than))
    return result.rowcount or 0


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (utcnow() - ensure_utc(oldest_pending)).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def drain_outbox(session_factory, outbox_model, bus, service_name: str, limit: int = 100) -> int:
    """Publish one claimed batch; failed rows go back to `PENDING`.

    Returns the number of rows delivered.
    """

    with session_factory() as db:
        rows = claim_outbox_batch(db, outbox_model, limit=limit)
        update_outbox_backlog_metrics(db, outbox_model, service_name)
        db.commit()
    sent = 0
    for row in rows:
        try:
            await bus.publish(row["topic"], EventEnvelope(**row["payload"]), key=row["key"])
        except Exception as exc:
            logger.exception("outbox publish failed topic=%s id=%s: %s", row["topic"], row["id"], exc)
            with session_factory() as db:
                requeue_outbox_event(db, outbox_model, row["id"])
                db.commit()
            continue
        with session_factory() as db:
            mark_outbox_sent(db, outbox_model, row["id"])
            db.commit()
        sent += 1
    if rows:
        with session_factory() as db:
            update_outbox_backlog_metrics(db, outbox_model, service_name)
    return sent
