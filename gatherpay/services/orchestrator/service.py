"""Orchestrator: admission, verdict aggregation, decision and recovery.

Owns every `Orchestration` row. One coordinator task per in-flight transaction
waits for all three verdicts or the aggregation deadline, applies the decision
matrix exactly once and hands the result to the execution committer. All state
lives in the database, so a restarted process resumes instead of re-deciding.
"""

import asyncio
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from gatherpay.common.config import settings
from gatherpay.common.db import ensure_utc, utcnow
from gatherpay.common.errors import (
    ConcurrencyConflict,
    DeadLetterNotFound,
    DeadLetterResolved,
    IdempotencyConflict,
    IdempotencyStoreUnavailable,
    LedgerError,
    ReservationStateError,
    StructuralError,
    TransientError,
)
from gatherpay.common.events import EventEnvelope, consume_forever
from gatherpay.common.logging import bound, logger, transaction_id_ctx
from gatherpay.common.metrics import (
    aggregation_seconds,
    decisions_total,
    duplicate_events_skipped_total,
    duplicate_submissions_total,
    idempotency_store_unavailable_total,
    late_verdicts_total,
    payment_requests_total,
    verdicts_total,
)
from gatherpay.common.outbox import purge_sent_outbox
from gatherpay.common.state_machine import (
    AWAITING_VALIDATIONS,
    COLLECTING_PHASES,
    DECIDED,
    EXECUTING,
    FAILED,
    PENDING,
    TIMED_OUT,
)
from gatherpay.common.topics import TOPIC_PAYMENTS_SUBMITTED, TOPIC_VERDICTS
from gatherpay.common.tracing import get_tracer
from gatherpay.services.orchestrator import audit
from gatherpay.services.orchestrator.audit import AuditWriter
from gatherpay.services.orchestrator.committer import ExecutionCommitter, outcome_of
from gatherpay.services.orchestrator.dead_letter import DeadLetterManager
from gatherpay.services.orchestrator.decision import PROCEED, decide
from gatherpay.services.orchestrator.dispatch import DispatchRouter
from gatherpay.services.orchestrator.idempotency import AdmitResult, IdempotencyGate
from gatherpay.services.orchestrator.models import (
    DeadLetter,
    InboxEvent,
    LiveVerdict,
    Orchestration,
    OutboxEvent,
    TransactionRecord,
)
from gatherpay.services.orchestrator.publisher import ConfirmationPublisher
from gatherpay.services.orchestrator.schemas import (
    VALIDATOR_KINDS,
    AdmitStatus,
    DeadLetterStage,
    DeadLetterStatus,
    FailureKind,
    FinalStatus,
    PaymentCreateRequest,
    PaymentRequest,
    ValidatorKind,
    Verdict,
    VerdictDecision,
)
from gatherpay.services.orchestrator.transitions import transition, update_in_phase

tracer = get_tracer(__name__)

VERDICT_CONSUMER = "orchestrator-verdicts"
MAINTENANCE_INTERVAL_SECONDS = 300


class OrchestratorService:
    """Drives each admitted payment to exactly one terminal outcome."""

    def __init__(self, session_factory, transport, ledger, bus, *, config=settings, rng=None) -> None:
        self.session_factory = session_factory
        self.transport = transport
        self.ledger = ledger
        self.bus = bus
        self.config = config
        self.service_name = config.service_name

        self.gate = IdempotencyGate(config.idempotency_record_ttl)
        self.audit = AuditWriter()
        self.publisher = ConfirmationPublisher(session_factory, bus, self.service_name)
        self.dead_letters = DeadLetterManager(
            session_factory, self.audit, self.publisher, config, rng=rng, service_name=self.service_name
        )
        self.committer = ExecutionCommitter(
            session_factory,
            ledger,
            self.gate,
            self.audit,
            self.publisher,
            config,
            on_terminal=self._signal_terminal,
            rng=rng,
            service_name=self.service_name,
        )
        self.router = DispatchRouter(
            session_factory, transport, self.audit, self.dead_letters, config, on_dispatched=self._start_coordinator
        )

        self.transport.bind(self.handle_verdict)
        self.dead_letters.register(DeadLetterStage.DISPATCH, self._retry_dispatch)
        self.dead_letters.register(DeadLetterStage.COMMIT, self._retry_commit)
        self.dead_letters.register(DeadLetterStage.RELEASE, self._retry_release)

        self._ready: dict[str, asyncio.Event] = {}
        self._terminal: dict[str, asyncio.Event] = {}
        self._waiters: dict[str, int] = {}
        self._coordinators: dict[str, asyncio.Task] = {}
        self._background: list[asyncio.Task] = []

    # -- lifecycle ---------------------------------------------------------

    async def start(self, run_background_loops: bool = True, consume_kafka: bool = False) -> None:
        await self.router.start()
        recovered = self.recover()
        logger.info("orchestrator_started recovered=%s", recovered)
        if run_background_loops:
            self._background += [
                asyncio.create_task(self.publisher.run_forever()),
                asyncio.create_task(self.dead_letters.run_forever()),
                asyncio.create_task(self._maintenance_loop()),
            ]
        if consume_kafka:
            self._background += [
                asyncio.create_task(consume_forever(TOPIC_VERDICTS, VERDICT_CONSUMER, self._consume_verdict)),
                asyncio.create_task(
                    consume_forever(TOPIC_PAYMENTS_SUBMITTED, "orchestrator-ingress", self._consume_submission)
                ),
            ]

    async def stop(self) -> None:
        tasks = self._background + list(self._coordinators.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background = []
        await self.router.stop()
        await self.transport.stop()

    def recover(self) -> int:
        """Resume every non-terminal orchestration found in the database."""

        with self.session_factory() as db:
            rows = db.execute(
                select(Orchestration.transaction_id, Orchestration.phase, Orchestration.source_account).where(
                    Orchestration.phase.in_([PENDING, AWAITING_VALIDATIONS, TIMED_OUT, DECIDED, EXECUTING])
                )
            ).all()
            parked = set(
                db.execute(
                    select(DeadLetter.transaction_id).where(
                        DeadLetter.stage == DeadLetterStage.DISPATCH.value,
                        DeadLetter.status != DeadLetterStatus.RESOLVED.value,
                    )
                ).scalars()
            )
        resumed = 0
        for row in rows:
            if row.phase == PENDING:
                if row.transaction_id in parked:
                    continue
                self.router.dispatch(row.transaction_id, row.source_account)
            else:
                self._start_coordinator(row.transaction_id)
            resumed += 1
        return resumed

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
            try:
                self.run_maintenance()
            except SQLAlchemyError as exc:
                logger.error("maintenance_failed error=%s", exc)

    def run_maintenance(self) -> dict[str, int]:
        """Purge expired idempotency keys and rows past their retention window."""

        event_cutoff = utcnow() - timedelta(days=self.config.event_retention_days)
        with self.session_factory() as db:
            inbox = db.execute(delete(InboxEvent).where(InboxEvent.consumed_at < event_cutoff))
            purged = {
                "idempotency_records": self.gate.purge_expired(db),
                "audit_events": self.audit.purge_older_than(db, self.config.audit_retention_days),
                "inbox_events": inbox.rowcount or 0,
                "outbox_events": purge_sent_outbox(db, OutboxEvent, event_cutoff),
            }
            db.commit()
        if any(purged.values()):
            logger.info(
                "maintenance_purged idempotency_records=%s audit_events=%s inbox_events=%s outbox_events=%s",
                purged["idempotency_records"],
                purged["audit_events"],
                purged["inbox_events"],
                purged["outbox_events"],
            )
        return purged

    # -- admission ---------------------------------------------------------

    async def submit(self, create_req: PaymentCreateRequest) -> AdmitResult:
        """Admit a submission; dispatch only when the idempotency key is new."""

        payment_requests_total.labels(service=self.service_name).inc()
        request = PaymentRequest(**create_req.model_dump())
        try:
            with self.session_factory() as db:
                result = self.gate.admit(db, request)
                if result.status is AdmitStatus.NEW:
                    db.add(
                        Orchestration(
                            transaction_id=request.transaction_id,
                            idempotency_key=request.idempotency_key,
                            source_account=request.source_account,
                            request=request.model_dump(mode="json"),
                            phase=PENDING,
                        )
                    )
                    db.commit()
        except IdempotencyStoreUnavailable:
            idempotency_store_unavailable_total.labels(service=self.service_name).inc()
            raise
        except SQLAlchemyError as exc:
            idempotency_store_unavailable_total.labels(service=self.service_name).inc()
            logger.error("idempotency_store_unavailable key=%s error=%s", request.idempotency_key, exc)
            raise IdempotencyStoreUnavailable("idempotency store unavailable") from exc

        if result.status is not AdmitStatus.NEW:
            duplicate_submissions_total.labels(service=self.service_name, kind=result.status.value).inc()
            logger.info(
                "duplicate_submission key=%s transaction_id=%s status=%s",
                request.idempotency_key,
                result.transaction_id,
                result.status.value,
            )
            return result

        logger.info(
            "payment_admitted transaction_id=%s key=%s source_account=%s amount=%s",
            request.transaction_id,
            request.idempotency_key,
            request.source_account,
            request.amount,
        )
        self.router.dispatch(request.transaction_id, request.source_account)
        return result

    async def submit_and_wait(self, create_req: PaymentCreateRequest, timeout: float | None = None) -> dict:
        """Submit and return the terminal outcome; duplicates get the same answer."""

        result = await self.submit(create_req)
        if result.status is AdmitStatus.DUPLICATE_COMPLETED:
            return result.outcome
        outcome = await self.wait_for_outcome(result.transaction_id, timeout)
        if outcome is None:
            return {"transaction_id": result.transaction_id, "status": "PROCESSING", "reason": None}
        return outcome

    async def wait_for_outcome(self, transaction_id: str, timeout: float | None = None) -> dict | None:
        """Terminal outcome of `transaction_id`, or None if it is not final within `timeout`."""

        event = self._terminal.setdefault(transaction_id, asyncio.Event())
        self._waiters[transaction_id] = self._waiters.get(transaction_id, 0) + 1
        try:
            outcome = self.get_outcome(transaction_id)
            if outcome is None:
                try:
                    await asyncio.wait_for(event.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
                outcome = self.get_outcome(transaction_id)
            return outcome
        finally:
            left = self._waiters.pop(transaction_id) - 1
            if left:
                self._waiters[transaction_id] = left
            else:
                self._terminal.pop(transaction_id, None)

    def _signal_terminal(self, transaction_id: str, outcome: dict) -> None:
        event = self._terminal.pop(transaction_id, None)
        if event is not None:
            event.set()

    # -- reads -------------------------------------------------------------

    def get_outcome(self, transaction_id: str) -> dict | None:
        with self.session_factory() as db:
            record = db.get(TransactionRecord, transaction_id)
            return outcome_of(record) if record is not None else None

    def get_state(self, transaction_id: str) -> Orchestration | None:
        with self.session_factory() as db:
            return db.get(Orchestration, transaction_id)

    def get_record(self, transaction_id: str) -> TransactionRecord | None:
        with self.session_factory() as db:
            return db.get(TransactionRecord, transaction_id)

    def audit_trail(self, transaction_id: str):
        with self.session_factory() as db:
            return self.audit.history(db, transaction_id)

    # -- verdicts ----------------------------------------------------------

    async def handle_verdict(self, verdict: Verdict) -> None:
        """Apply one verdict to its live orchestration, at most once per verdict id."""

        kind = verdict.validator_kind
        orphan_reservation = None
        ready = False
        with bound(transaction_id=verdict.transaction_id):
            with self.session_factory() as db:
                seen = db.get(InboxEvent, (verdict.verdict_id, VERDICT_CONSUMER))
                if seen is not None:
                    duplicate_events_skipped_total.labels(service=self.service_name, topic=TOPIC_VERDICTS).inc()
                    logger.info("duplicate verdict skipped verdict_id=%s kind=%s", verdict.verdict_id, kind.value)
                    return
                db.add(InboxEvent(event_id=verdict.verdict_id, consumed_by_service=VERDICT_CONSUMER))

                state = db.get(Orchestration, verdict.transaction_id)
                if state is None:
                    logger.warning("verdict_for_unknown_transaction verdict_id=%s kind=%s", verdict.verdict_id, kind.value)
                    db.commit()
                    return

                if state.phase not in COLLECTING_PHASES:
                    self._ignore(db, verdict, audit.IGNORED_LATE, "late", state.phase)
                    if kind is ValidatorKind.LEDGER and verdict.reservation_id:
                        record = db.get(TransactionRecord, verdict.transaction_id)
                        settled_without_commit = (
                            record is not None and record.final_status != FinalStatus.COMPLETED.value
                        )
                        if settled_without_commit or verdict.reservation_id != state.reservation_id:
                            orphan_reservation = verdict.reservation_id
                elif verdict.attempt_nonce != state.attempt_nonce:
                    self._ignore(db, verdict, audit.IGNORED_STALE, "stale_attempt", state.phase)
                else:
                    ready = self._apply_verdict(db, state, verdict)
                db.commit()

        if orphan_reservation is not None:
            await self._release_orphan(verdict.transaction_id, orphan_reservation)
        if ready:
            event = self._ready.get(verdict.transaction_id)
            if event is not None:
                event.set()

    def _ignore(self, db, verdict: Verdict, event_type: str, reason: str, phase: str) -> None:
        self.audit.append(
            db,
            verdict.transaction_id,
            event_type,
            {
                "validator_kind": verdict.validator_kind.value,
                "decision": verdict.decision.value,
                "verdict_id": verdict.verdict_id,
                "attempt_nonce": verdict.attempt_nonce,
                "phase": phase,
            },
        )
        late_verdicts_total.labels(
            service=self.service_name, validator=verdict.validator_kind.value, reason=reason
        ).inc()
        logger.info(
            "verdict_ignored transaction_id=%s kind=%s reason=%s phase=%s",
            verdict.transaction_id,
            verdict.validator_kind.value,
            reason,
            phase,
        )

    def _apply_verdict(self, db, state: Orchestration, verdict: Verdict) -> bool:
        """Collapse the verdict into the live row; returns True once all kinds are in."""

        kind = verdict.validator_kind.value
        received_at = ensure_utc(verdict.received_at)
        live = db.get(LiveVerdict, (verdict.transaction_id, kind))
        if live is None:
            live = LiveVerdict(transaction_id=verdict.transaction_id, validator_kind=kind)
            db.add(live)
        elif live.attempt_nonce == verdict.attempt_nonce and ensure_utc(live.received_at) > received_at:
            self._ignore(db, verdict, audit.IGNORED_STALE, "superseded", state.phase)
            return False
        live.attempt_nonce = verdict.attempt_nonce
        live.verdict_id = verdict.verdict_id
        live.decision = verdict.decision.value
        live.detail = verdict.detail
        live.reservation_id = verdict.reservation_id
        live.received_at = received_at
        db.flush()

        if verdict.reservation_id and verdict.reservation_id != state.reservation_id:
            update_in_phase(db, state, reservation_id=verdict.reservation_id)

        self.audit.append(
            db,
            verdict.transaction_id,
            audit.VERDICT_RECEIVED,
            {
                "validator_kind": kind,
                "decision": verdict.decision.value,
                "detail": verdict.detail,
                "verdict_id": verdict.verdict_id,
                "reservation_id": verdict.reservation_id,
            },
        )
        verdicts_total.labels(service=self.service_name, validator=kind, decision=verdict.decision.value).inc()
        collected = db.execute(
            select(LiveVerdict.validator_kind).where(
                LiveVerdict.transaction_id == verdict.transaction_id,
                LiveVerdict.attempt_nonce == state.attempt_nonce,
            )
        ).scalars().all()
        return len(set(collected)) == len(VALIDATOR_KINDS)

    async def _release_orphan(self, transaction_id: str, reservation_id: str) -> None:
        if await self._try_release(transaction_id, reservation_id):
            with self.session_factory() as db:
                self.audit.append(db, transaction_id, audit.ORPHAN_RELEASED, {"reservation_id": reservation_id})
                db.commit()

    async def _consume_verdict(self, event: EventEnvelope) -> None:
        await self.handle_verdict(Verdict.model_validate(event.payload))

    async def _consume_submission(self, event: EventEnvelope) -> None:
        try:
            create_req = PaymentCreateRequest.model_validate(event.payload)
        except ValidationError as exc:
            self.dead_letters.on_failure(
                event.aggregate_id, DeadLetterStage.INGRESS, event.payload, str(exc), FailureKind.STRUCTURAL
            )
            return
        try:
            await self.submit(create_req)
        except IdempotencyConflict as exc:
            logger.warning("ingress_idempotency_conflict key=%s error=%s", create_req.idempotency_key, exc)

    # -- coordination ------------------------------------------------------

    def _start_coordinator(self, transaction_id: str) -> None:
        if transaction_id in self._coordinators:
            return
        task = asyncio.create_task(self._coordinate(transaction_id))
        self._coordinators[transaction_id] = task
        task.add_done_callback(lambda _t, tid=transaction_id: self._coordinators.pop(tid, None))

    def _collect_status(self, transaction_id: str) -> tuple[str | None, float, bool]:
        with self.session_factory() as db:
            state = db.get(Orchestration, transaction_id)
            if state is None:
                return None, 0.0, False
            collected = db.execute(
                select(LiveVerdict.validator_kind).where(
                    LiveVerdict.transaction_id == transaction_id,
                    LiveVerdict.attempt_nonce == state.attempt_nonce,
                )
            ).scalars().all()
            remaining = 0.0
            if state.deadline_at is not None:
                remaining = (ensure_utc(state.deadline_at) - utcnow()).total_seconds()
            return state.phase, remaining, len(set(collected)) == len(VALIDATOR_KINDS)

    async def _coordinate(self, transaction_id: str) -> None:
        ready = self._ready.setdefault(transaction_id, asyncio.Event())
        token = transaction_id_ctx.set(transaction_id)
        try:
            phase, remaining, complete = self._collect_status(transaction_id)
            if phase == AWAITING_VALIDATIONS and not complete and remaining > 0:
                try:
                    await asyncio.wait_for(ready.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
            if phase in (AWAITING_VALIDATIONS, TIMED_OUT):
                phase = self._decide(transaction_id)
            if phase in (DECIDED, EXECUTING):
                await self._execute(transaction_id)
        except ConcurrencyConflict as exc:
            logger.warning("coordinator_conflict transaction_id=%s error=%s", transaction_id, exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("coordinator_error transaction_id=%s", transaction_id)
        finally:
            self._ready.pop(transaction_id, None)
            transaction_id_ctx.reset(token)

    def _decide(self, transaction_id: str) -> str:
        """Apply the decision matrix once; returns the phase afterwards."""

        with tracer.start_as_current_span("decide") as span, self.session_factory() as db:
            span.set_attribute("transaction_id", transaction_id)
            state = db.get(Orchestration, transaction_id)
            if state.phase not in (AWAITING_VALIDATIONS, TIMED_OUT):
                return state.phase
            live = {
                row.validator_kind: row
                for row in db.execute(
                    select(LiveVerdict).where(
                        LiveVerdict.transaction_id == transaction_id,
                        LiveVerdict.attempt_nonce == state.attempt_nonce,
                    )
                ).scalars()
            }
            verdicts: dict[ValidatorKind, VerdictDecision | None] = {}
            for kind in VALIDATOR_KINDS:
                row = live.get(kind.value)
                decision = VerdictDecision(row.decision) if row is not None else None
                if kind is ValidatorKind.LEDGER and decision is VerdictDecision.APPROVE and not row.reservation_id:
                    decision = VerdictDecision.ERROR
                verdicts[kind] = decision
            missing = [kind.value for kind, decision in verdicts.items() if decision is None]

            timed_out = state.phase == TIMED_OUT or bool(missing)
            if state.phase == AWAITING_VALIDATIONS and missing:
                transition(db, state, TIMED_OUT)
                self.audit.append(db, transaction_id, audit.TIMED_OUT, {"missing": missing})

            result = decide(verdicts)
            transition(db, state, DECIDED, decision=result.outcome, decision_reason=result.reason)
            self.audit.append(
                db,
                transaction_id,
                audit.DECISION_MADE,
                {
                    "outcome": result.outcome,
                    "reason": result.reason,
                    "verdicts": {kind.value: (d.value if d else None) for kind, d in verdicts.items()},
                },
            )
            dispatched_at = ensure_utc(state.dispatched_at)
            db.commit()

        decisions_total.labels(service=self.service_name, outcome=result.outcome, reason=result.reason).inc()
        if dispatched_at is not None:
            aggregation_seconds.labels(service=self.service_name, timed_out=str(timed_out).lower()).observe(
                max(0.0, (utcnow() - dispatched_at).total_seconds())
            )
        logger.info(
            "decision_made transaction_id=%s outcome=%s reason=%s timed_out=%s",
            transaction_id,
            result.outcome,
            result.reason,
            timed_out,
        )
        return DECIDED

    async def _execute(self, transaction_id: str) -> None:
        """Carry out the stored decision: commit, or release and reject."""

        with self.session_factory() as db:
            state = db.get(Orchestration, transaction_id)
            if state.phase not in (DECIDED, EXECUTING):
                return
            proceed = state.decision == PROCEED
            reservation_id = state.reservation_id
            reason = state.decision_reason
            if state.phase == DECIDED and (proceed or reservation_id):
                transition(db, state, EXECUTING)
                db.commit()

        if proceed:
            await self._commit(transaction_id, reservation_id)
        elif reservation_id:
            released = await self._try_release(transaction_id, reservation_id)
            self.committer.finalize(
                transaction_id,
                FinalStatus.REJECTED,
                reason,
                audit.RELEASED,
                {"reservation_id": reservation_id, "released": released},
            )
        else:
            self.committer.finalize(transaction_id, FinalStatus.REJECTED, reason, audit.REJECTED)

    async def _commit(self, transaction_id: str, reservation_id: str) -> None:
        try:
            await self.committer.commit(transaction_id, reservation_id)
        except (LedgerError, TransientError) as exc:
            kind = FailureKind.STRUCTURAL if isinstance(exc, StructuralError) else FailureKind.TRANSIENT
            with self.session_factory() as db:
                state = db.get(Orchestration, transaction_id)
                request = state.request
                if state.phase == EXECUTING:
                    transition(db, state, FAILED)
                self.audit.append(
                    db,
                    transaction_id,
                    audit.COMMIT_FAILED,
                    {"reservation_id": reservation_id, "code": getattr(exc, "code", "ERROR"), "error": str(exc)},
                )
                db.commit()
            logger.error("commit_failed transaction_id=%s reservation_id=%s error=%s", transaction_id, reservation_id, exc)
            self.dead_letters.on_failure(
                transaction_id,
                DeadLetterStage.COMMIT,
                {"request": request, "reservation_id": reservation_id},
                str(exc),
                kind,
            )

    async def _try_release(self, transaction_id: str, reservation_id: str) -> bool:
        try:
            await self.committer.release(transaction_id, reservation_id)
        except (LedgerError, TransientError) as exc:
            kind = FailureKind.STRUCTURAL if isinstance(exc, StructuralError) else FailureKind.TRANSIENT
            self.dead_letters.on_failure(
                transaction_id, DeadLetterStage.RELEASE, {"reservation_id": reservation_id}, str(exc), kind
            )
            return False
        return True

    # -- dead-letter handlers ----------------------------------------------

    async def _retry_dispatch(self, envelope: DeadLetter) -> None:
        with self.session_factory() as db:
            state = db.get(Orchestration, envelope.transaction_id)
            if state is None:
                raise StructuralError(f"unknown transaction {envelope.transaction_id}")
            source_account = state.source_account
        await self.router.dispatch_and_wait(envelope.transaction_id, source_account)

    async def _retry_commit(self, envelope: DeadLetter) -> None:
        await self.committer.commit(envelope.transaction_id, envelope.original_request["reservation_id"], attempts=1)

    async def _retry_release(self, envelope: DeadLetter) -> None:
        reservation_id = envelope.original_request["reservation_id"]
        await self.committer.release(envelope.transaction_id, reservation_id, attempts=1)
        with self.session_factory() as db:
            self.audit.append(
                db,
                envelope.transaction_id,
                audit.RELEASED,
                {"reservation_id": reservation_id, "released": True, "dead_letter_id": envelope.id},
            )
            db.commit()

    async def resolve_dead_letter(self, envelope_id: str, final_status: FinalStatus, resolved_by: str) -> DeadLetter:
        """Operator resolution: release what is held and finalize the transaction."""

        envelope = self.dead_letters.get(envelope_id)
        if envelope is None:
            raise DeadLetterNotFound(f"dead letter {envelope_id} not found")
        if envelope.status == DeadLetterStatus.RESOLVED.value:
            raise DeadLetterResolved(f"dead letter {envelope_id} is already resolved")

        with self.session_factory() as db:
            state = db.get(Orchestration, envelope.transaction_id)
            record = db.get(TransactionRecord, envelope.transaction_id)
        if state is not None and record is None:
            reservation_id = envelope.original_request.get("reservation_id") or state.reservation_id
            released = False
            if reservation_id:
                try:
                    await self.committer.release(envelope.transaction_id, reservation_id, attempts=1)
                    released = True
                except ReservationStateError as exc:
                    # The ledger already moved the money; only COMPLETED is true now.
                    logger.warning(
                        "resolve_found_committed transaction_id=%s reservation_id=%s requested=%s error=%s",
                        envelope.transaction_id,
                        reservation_id,
                        final_status.value,
                        exc,
                    )
                    await self.committer.commit(envelope.transaction_id, reservation_id, attempts=1)
                    return self.dead_letters.mark_resolved(envelope_id, resolved_by)
                except (LedgerError, TransientError) as exc:
                    logger.warning(
                        "resolve_release_failed transaction_id=%s reservation_id=%s error=%s",
                        envelope.transaction_id,
                        reservation_id,
                        exc,
                    )
                    raise
            self.committer.finalize(
                envelope.transaction_id,
                final_status,
                f"manual_{final_status.value.lower()}",
                audit.RESOLVED,
                {"dead_letter_id": envelope.id, "resolved_by": resolved_by, "released": released},
            )
        return self.dead_letters.mark_resolved(envelope_id, resolved_by)
