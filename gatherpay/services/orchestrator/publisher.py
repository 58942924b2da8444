"""Confirmation and operator-signal publishing through the outbox.

Rows are enqueued inside the transaction that writes the terminal record, so a
confirmation can never be published for an outcome that did not commit. The
publisher loop delivers them afterwards, at least once, always with the same
event id for downstream dedupe.
"""

import asyncio

from sqlalchemy import select

from gatherpay.common.events import EventEnvelope
from gatherpay.common.logging import logger, trace_id_ctx
from gatherpay.common.outbox import drain_outbox
from gatherpay.common.topics import TOPIC_CONFIRMED, TOPIC_MANUAL_REVIEW
from gatherpay.services.orchestrator.models import OutboxEvent
from gatherpay.services.orchestrator.schemas import ConfirmationEvent


class ConfirmationPublisher:
    def __init__(self, session_factory, bus, service_name: str = "orchestrator", poll_seconds: float = 0.5) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.service_name = service_name
        self.poll_seconds = poll_seconds
        self._wakeup = asyncio.Event()

    def _enqueue(self, db, dedupe_key: str, topic: str, aggregate_id: str, partition_key: str | None, payload: dict) -> str:
        existing = db.execute(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)).scalar_one_or_none()
        if existing is not None:
            return existing.payload["event_id"]
        envelope = EventEnvelope(
            event_type=topic,
            aggregate_id=aggregate_id,
            trace_id=trace_id_ctx.get(),
            payload=payload,
        )
        db.add(
            OutboxEvent(
                dedupe_key=dedupe_key,
                aggregate_id=aggregate_id,
                event_type=topic,
                topic=topic,
                partition_key=partition_key,
                payload=envelope.model_dump(),
            )
        )
        return envelope.event_id

    def enqueue_confirmation(self, db, event: ConfirmationEvent) -> str:
        """Stage the one confirmation for a transaction; returns its event id."""

        return self._enqueue(
            db,
            dedupe_key=f"confirmation:{event.transaction_id}",
            topic=TOPIC_CONFIRMED,
            aggregate_id=event.transaction_id,
            partition_key=event.source_account,
            payload=event.model_dump(mode="json"),
        )

    def enqueue_manual_review(self, db, envelope_id: str, transaction_id: str, stage: str, reason: str, attempt: int) -> str:
        return self._enqueue(
            db,
            dedupe_key=f"manual-review:{envelope_id}:{attempt}",
            topic=TOPIC_MANUAL_REVIEW,
            aggregate_id=transaction_id,
            partition_key=None,
            payload={"dead_letter_id": envelope_id, "stage": stage, "reason": reason, "attempt": attempt},
        )

    def wake(self) -> None:
        self._wakeup.set()

    async def publish_pending(self) -> int:
        return await drain_outbox(self.session_factory, OutboxEvent, self.bus, self.service_name)

    async def run_forever(self) -> None:
        """Continuously publish pending outbox rows; `wake()` skips the wait."""

        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("outbox_publisher_error: %s", exc)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
