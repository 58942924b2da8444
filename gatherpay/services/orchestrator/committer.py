"""Execution committer: ledger commit/release and terminal finalization."""

from sqlalchemy.exc import IntegrityError

from gatherpay.common.db import ensure_utc, utcnow
from gatherpay.common.errors import ReservationExpired, ReservationNotFound
from gatherpay.common.logging import logger
from gatherpay.common.metrics import payment_e2e_seconds
from gatherpay.common.retry import call_with_retries
from gatherpay.common.tracing import get_tracer
from gatherpay.services.orchestrator import audit
from gatherpay.services.orchestrator.models import Orchestration, TransactionRecord
from gatherpay.services.orchestrator.schemas import ConfirmationEvent, FinalStatus, PaymentRequest
from gatherpay.services.orchestrator.transitions import transition, update_in_phase

tracer = get_tracer(__name__)


def build_outcome(transaction_id: str, final_status: str, reason: str) -> dict:
    """Client-facing terminal outcome; also what the idempotency gate caches."""

    return {"transaction_id": transaction_id, "status": final_status, "reason": reason}


def outcome_of(record: TransactionRecord) -> dict:
    return build_outcome(record.transaction_id, record.final_status, record.reason)


class ExecutionCommitter:
    def __init__(
        self,
        session_factory,
        ledger,
        gate,
        audit_writer,
        publisher,
        config,
        on_terminal=None,
        rng=None,
        service_name: str = "orchestrator",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.gate = gate
        self.audit = audit_writer
        self.publisher = publisher
        self.config = config
        self.on_terminal = on_terminal
        self.rng = rng
        self.service_name = service_name

    def fee_for(self, amount: int) -> int:
        return amount * self.config.fee_basis_points // 10_000

    def _ledger_call(self, fn, dependency: str, attempts: int | None):
        return call_with_retries(
            fn,
            attempts=attempts or self.config.commit_attempts,
            base_ms=self.config.retry_base_delay_ms,
            cap_ms=self.config.retry_max_delay_ms,
            dependency=dependency,
            rng=self.rng,
        )

    async def commit(self, transaction_id: str, reservation_id: str, attempts: int | None = None) -> TransactionRecord:
        """Commit the reservation and finalize COMPLETED, at most once per transaction.

        Transient ledger errors are retried with backoff; the last error is
        raised once attempts run out so the caller can dead-letter it.
        """

        with self.session_factory() as db:
            existing = db.get(TransactionRecord, transaction_id)
            if existing is not None:
                logger.info("commit_skipped_already_final transaction_id=%s status=%s", transaction_id, existing.final_status)
                return existing
            state = db.get(Orchestration, transaction_id)
            amount = int(state.request["amount"])
            reason = state.decision_reason or "all_approved"

        with tracer.start_as_current_span("ledger_commit") as span:
            span.set_attribute("transaction_id", transaction_id)
            await self._ledger_call(
                lambda: self.ledger.commit(reservation_id, fee=self.fee_for(amount)),
                "ledger_commit",
                attempts,
            )
        logger.info("ledger_committed transaction_id=%s reservation_id=%s", transaction_id, reservation_id)
        return self.finalize(
            transaction_id,
            FinalStatus.COMPLETED,
            reason,
            audit.COMMITTED,
            {"reservation_id": reservation_id},
            reservation_id=reservation_id,
        )

    async def release(self, transaction_id: str, reservation_id: str, attempts: int | None = None) -> None:
        """Release a reservation; an already expired or unknown one counts as released."""

        try:
            await self._ledger_call(lambda: self.ledger.release(reservation_id), "ledger_release", attempts)
        except (ReservationExpired, ReservationNotFound) as exc:
            logger.info(
                "release_noop transaction_id=%s reservation_id=%s code=%s", transaction_id, reservation_id, exc.code
            )
            return
        logger.info("ledger_released transaction_id=%s reservation_id=%s", transaction_id, reservation_id)

    def finalize(
        self,
        transaction_id: str,
        final_status: FinalStatus,
        reason: str,
        audit_type: str,
        payload: dict | None = None,
        reservation_id: str | None = None,
    ) -> TransactionRecord:
        """Write the terminal record and everything that must commit with it.

        In one database transaction: insert the TransactionRecord (its primary
        key is the create-once guard), move the phase, flip the idempotency
        record to COMPLETED with the cached outcome, append the audit event and
        stage the confirmation in the outbox.
        """

        with self.session_factory() as db:
            state = db.get(Orchestration, transaction_id)
            request = PaymentRequest.model_validate(state.request)
            record = TransactionRecord(
                transaction_id=transaction_id,
                final_status=final_status.value,
                reason=reason,
                ledger_reservation_id=reservation_id or state.reservation_id,
                completed_at=utcnow(),
            )
            db.add(record)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                existing = db.get(TransactionRecord, transaction_id)
                logger.warning("finalize_skipped_already_final transaction_id=%s status=%s", transaction_id, existing.final_status)
                return existing

            if state.phase != final_status.value:
                transition(db, state, final_status.value)
            elif state.archived_at is None:
                update_in_phase(db, state, archived_at=record.completed_at)

            outcome = build_outcome(transaction_id, final_status.value, reason)
            self.gate.complete(db, state.idempotency_key, outcome)
            confirmation_id = self.publisher.enqueue_confirmation(
                db,
                ConfirmationEvent(
                    transaction_id=transaction_id,
                    final_status=final_status,
                    reason=reason,
                    source_account=request.source_account,
                    dest_account=request.dest_account,
                    amount=request.amount,
                    currency=request.currency,
                    fee=self.fee_for(request.amount) if final_status is FinalStatus.COMPLETED else 0,
                    completed_at=record.completed_at,
                ),
            )
            self.audit.append(
                db,
                transaction_id,
                audit_type,
                {
                    **(payload or {}),
                    "final_status": final_status.value,
                    "reason": reason,
                    "confirmation_event_id": confirmation_id,
                },
            )
            db.commit()

        elapsed = max(0.0, (record.completed_at - ensure_utc(request.submitted_at)).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=final_status.value).observe(elapsed)
        logger.info(
            "transaction_finalized transaction_id=%s final_status=%s reason=%s",
            transaction_id,
            final_status.value,
            reason,
        )
        self.publisher.wake()
        if self.on_terminal is not None:
            self.on_terminal(transaction_id, outcome)
        return record
