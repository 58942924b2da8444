"""Dead-letter and retry manager.

Failed dispatches, commits and releases are persisted as envelopes. Transient
failures are retried with capped exponential backoff; structural failures and
envelopes that exhaust `max_retry_attempts` move to MANUAL_REVIEW, where an
operator signal is emitted and the envelope waits for `requeue` or resolution.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select

from gatherpay.common.db import utcnow
from gatherpay.common.errors import StructuralError
from gatherpay.common.logging import bound, logger
from gatherpay.common.metrics import dlq_published_total, manual_review_total
from gatherpay.common.retry import backoff_delay_ms
from gatherpay.services.orchestrator import audit
from gatherpay.services.orchestrator.models import DeadLetter
from gatherpay.services.orchestrator.schemas import DeadLetterStage, DeadLetterStatus, FailureKind

# Claimed envelopes are pushed this far into the future while their handler runs.
CLAIM_LEASE_SECONDS = 60


class DeadLetterManager:
    def __init__(self, session_factory, audit_writer, publisher, config, rng=None, service_name: str = "orchestrator") -> None:
        self.session_factory = session_factory
        self.audit = audit_writer
        self.publisher = publisher
        self.config = config
        self.rng = rng
        self.service_name = service_name
        self._handlers: dict[DeadLetterStage, object] = {}

    def register(self, stage: DeadLetterStage, handler) -> None:
        """Set the coroutine that re-drives envelopes of one stage."""

        self._handlers[stage] = handler

    def _delay(self, attempt: int) -> timedelta:
        ms = backoff_delay_ms(attempt, self.config.retry_base_delay_ms, self.config.retry_max_delay_ms, self.rng)
        return timedelta(milliseconds=ms)

    def schedule_retry(self, envelope: DeadLetter) -> None:
        envelope.status = DeadLetterStatus.PENDING_RETRY.value
        envelope.next_retry_at = utcnow() + self._delay(envelope.attempt)

    def on_failure(
        self,
        transaction_id: str,
        stage: DeadLetterStage,
        request: dict,
        reason: str,
        kind: FailureKind,
    ) -> DeadLetter:
        """Record a failed attempt; one open envelope per (transaction, stage)."""

        with self.session_factory() as db:
            envelope = db.execute(
                select(DeadLetter).where(
                    DeadLetter.transaction_id == transaction_id,
                    DeadLetter.stage == stage.value,
                    DeadLetter.status != DeadLetterStatus.RESOLVED.value,
                )
            ).scalar_one_or_none()
            if envelope is None:
                envelope = DeadLetter(
                    transaction_id=transaction_id,
                    stage=stage.value,
                    original_request=request,
                    failure_reason=reason,
                    failure_kind=kind.value,
                    attempt=0,
                    status=DeadLetterStatus.PENDING_RETRY.value,
                )
                db.add(envelope)
            else:
                envelope.failure_reason = reason
                envelope.failure_kind = kind.value

            self.audit.append(
                db,
                transaction_id,
                audit.DEAD_LETTERED,
                {"stage": stage.value, "failure_kind": kind.value, "reason": reason},
            )
            if kind is FailureKind.STRUCTURAL:
                db.flush()
                self._escalate(db, envelope, reason)
            else:
                self.schedule_retry(envelope)
            db.commit()
        dlq_published_total.labels(service=self.service_name, stage=stage.value, failure_kind=kind.value).inc()
        logger.warning(
            "dead_lettered transaction_id=%s stage=%s failure_kind=%s attempt=%s reason=%s",
            transaction_id,
            stage.value,
            kind.value,
            envelope.attempt,
            reason,
        )
        self.publisher.wake()
        return envelope

    def _escalate(self, db, envelope: DeadLetter, reason: str) -> None:
        envelope.status = DeadLetterStatus.MANUAL_REVIEW.value
        envelope.next_retry_at = None
        envelope.failure_reason = reason
        self.publisher.enqueue_manual_review(
            db, envelope.id, envelope.transaction_id, envelope.stage, reason, envelope.attempt
        )
        self.audit.append(
            db,
            envelope.transaction_id,
            audit.MANUAL_REVIEW,
            {"dead_letter_id": envelope.id, "stage": envelope.stage, "attempt": envelope.attempt, "reason": reason},
        )
        manual_review_total.labels(service=self.service_name, stage=envelope.stage).inc()
        logger.error(
            "manual_review_required dead_letter_id=%s transaction_id=%s stage=%s attempt=%s reason=%s",
            envelope.id,
            envelope.transaction_id,
            envelope.stage,
            envelope.attempt,
            reason,
        )

    def _claim_due(self, limit: int) -> list[DeadLetter]:
        now = utcnow()
        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(DeadLetter)
                    .where(
                        DeadLetter.status == DeadLetterStatus.PENDING_RETRY.value,
                        DeadLetter.next_retry_at <= now,
                    )
                    .order_by(DeadLetter.next_retry_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            for row in rows:
                row.next_retry_at = now + timedelta(seconds=CLAIM_LEASE_SECONDS)
            db.commit()
            return rows

    async def run_due(self, limit: int = 50) -> int:
        """Re-drive every envelope whose retry time has come; returns how many ran."""

        envelopes = self._claim_due(limit)
        for envelope in envelopes:
            handler = self._handlers.get(DeadLetterStage(envelope.stage))
            with bound(transaction_id=envelope.transaction_id):
                try:
                    if handler is None:
                        raise StructuralError(f"no retry handler for stage {envelope.stage}")
                    await handler(envelope)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._record_retry_failure(envelope.id, exc)
                else:
                    self._record_retry_success(envelope.id)
        return len(envelopes)

    def _record_retry_success(self, envelope_id: str) -> None:
        with self.session_factory() as db:
            envelope = db.get(DeadLetter, envelope_id)
            if envelope is None:
                return
            logger.info(
                "dead_letter_retry_succeeded dead_letter_id=%s transaction_id=%s stage=%s attempt=%s",
                envelope.id,
                envelope.transaction_id,
                envelope.stage,
                envelope.attempt + 1,
            )
            db.delete(envelope)
            db.commit()

    def _record_retry_failure(self, envelope_id: str, exc: Exception) -> None:
        with self.session_factory() as db:
            envelope = db.get(DeadLetter, envelope_id)
            if envelope is None:
                return
            envelope.attempt += 1
            reason = str(exc)
            if isinstance(exc, StructuralError):
                envelope.failure_kind = FailureKind.STRUCTURAL.value
                self._escalate(db, envelope, reason)
            elif envelope.attempt >= self.config.max_retry_attempts:
                self._escalate(db, envelope, f"retries exhausted: {reason}")
            else:
                envelope.failure_reason = reason
                self.schedule_retry(envelope)
                logger.warning(
                    "dead_letter_retry_failed dead_letter_id=%s transaction_id=%s attempt=%s next_retry_at=%s error=%s",
                    envelope.id,
                    envelope.transaction_id,
                    envelope.attempt,
                    envelope.next_retry_at.isoformat(),
                    reason,
                )
            db.commit()
        self.publisher.wake()

    async def run_forever(self, poll_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("dead_letter_loop_error: %s", exc)
            await asyncio.sleep(poll_seconds)

    def list_envelopes(self, status: DeadLetterStatus | None = None, limit: int = 100) -> list[DeadLetter]:
        with self.session_factory() as db:
            query = select(DeadLetter).order_by(DeadLetter.created_at).limit(limit)
            if status is not None:
                query = query.where(DeadLetter.status == status.value)
            return db.execute(query).scalars().all()

    def get(self, envelope_id: str) -> DeadLetter | None:
        with self.session_factory() as db:
            return db.get(DeadLetter, envelope_id)

    def has_open(self, db, transaction_id: str, stage: DeadLetterStage) -> bool:
        return (
            db.execute(
                select(DeadLetter.id).where(
                    DeadLetter.transaction_id == transaction_id,
                    DeadLetter.stage == stage.value,
                    DeadLetter.status != DeadLetterStatus.RESOLVED.value,
                )
            ).first()
            is not None
        )

    def requeue(self, envelope_id: str) -> DeadLetter | None:
        """Re-arm an envelope for an immediate retry with a fresh attempt budget."""

        with self.session_factory() as db:
            envelope = db.get(DeadLetter, envelope_id)
            if envelope is None or envelope.status == DeadLetterStatus.RESOLVED.value:
                return envelope
            envelope.status = DeadLetterStatus.PENDING_RETRY.value
            envelope.attempt = 0
            envelope.next_retry_at = utcnow()
            db.commit()
            logger.info("dead_letter_requeued dead_letter_id=%s transaction_id=%s", envelope.id, envelope.transaction_id)
            return envelope

    def mark_resolved(self, envelope_id: str, resolved_by: str) -> DeadLetter | None:
        with self.session_factory() as db:
            envelope = db.get(DeadLetter, envelope_id)
            if envelope is None:
                return None
            envelope.status = DeadLetterStatus.RESOLVED.value
            envelope.next_retry_at = None
            envelope.resolved_by = resolved_by
            envelope.resolved_at = utcnow()
            db.commit()
            logger.info(
                "dead_letter_resolved dead_letter_id=%s transaction_id=%s resolved_by=%s",
                envelope.id,
                envelope.transaction_id,
                resolved_by,
            )
            return envelope

