"""Dispatch router: ordered per-account fan-out of admitted payments.

Jobs are spread over `partition_count` channels by a stable hash of the source
account. Each channel has exactly one worker, so two payments from the same
account are dispatched in submission order; payments from different accounts
proceed independently.
"""

import asyncio
import zlib
from datetime import timedelta
from uuid import uuid4

from pydantic import ValidationError

from gatherpay.common.db import utcnow
from gatherpay.common.errors import ConcurrencyConflict, StructuralError, TransientError
from gatherpay.common.logging import logger, transaction_id_ctx
from gatherpay.common.state_machine import AWAITING_VALIDATIONS, PENDING
from gatherpay.common.tracing import get_tracer
from gatherpay.services.orchestrator import audit
from gatherpay.services.orchestrator.models import Orchestration
from gatherpay.services.orchestrator.schemas import (
    VALIDATOR_KINDS,
    DeadLetterStage,
    FailureKind,
    PaymentRequest,
    ValidatorRequest,
)
from gatherpay.services.orchestrator.transitions import transition, update_in_phase

tracer = get_tracer(__name__)


def partition_for(source_account: str, partition_count: int) -> int:
    return zlib.crc32(source_account.encode("utf-8")) % partition_count


class DispatchRouter:
    def __init__(self, session_factory, transport, audit_writer, dead_letters, config, on_dispatched) -> None:
        self.session_factory = session_factory
        self.transport = transport
        self.audit = audit_writer
        self.dead_letters = dead_letters
        self.config = config
        self.on_dispatched = on_dispatched
        self._queues: list[asyncio.Queue] = []
        self._workers: list[asyncio.Task] = []

    async def start(self) -> None:
        if self._workers:
            return
        self._queues = [asyncio.Queue() for _ in range(self.config.partition_count)]
        self._workers = [asyncio.create_task(self._worker(queue)) for queue in self._queues]

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queues = []

    def dispatch(self, transaction_id: str, source_account: str) -> None:
        """Queue a PENDING orchestration for fan-out; failures go to the dead-letter manager."""

        self._queue_for(source_account).put_nowait((transaction_id, None))

    async def dispatch_and_wait(self, transaction_id: str, source_account: str) -> None:
        """Queue a retry and wait for it; failures are raised instead of dead-lettered."""

        done = asyncio.get_running_loop().create_future()
        self._queue_for(source_account).put_nowait((transaction_id, done))
        await done

    async def drain(self) -> None:
        await asyncio.gather(*(queue.join() for queue in self._queues))

    def _queue_for(self, source_account: str) -> asyncio.Queue:
        if not self._queues:
            raise RuntimeError("dispatch router is not started")
        return self._queues[partition_for(source_account, len(self._queues))]

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            transaction_id, done = await queue.get()
            token = transaction_id_ctx.set(transaction_id)
            try:
                await self._process(transaction_id, done)
                if done is not None and not done.done():
                    done.set_result(None)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("dispatch_worker_error transaction_id=%s", transaction_id)
                if done is not None and not done.done():
                    done.set_exception(exc)
            finally:
                transaction_id_ctx.reset(token)
                queue.task_done()

    def _begin_attempt(self, transaction_id: str) -> tuple[PaymentRequest, ValidatorRequest] | None:
        with self.session_factory() as db:
            state = db.get(Orchestration, transaction_id)
            if state is None:
                logger.warning("dispatch_unknown_transaction transaction_id=%s", transaction_id)
                return None
            if state.phase != PENDING:
                logger.info("dispatch_skipped transaction_id=%s phase=%s", transaction_id, state.phase)
                return None
            try:
                request = PaymentRequest.model_validate(state.request)
            except ValidationError as exc:
                raise StructuralError("malformed payment request", {"errors": exc.errors(include_url=False)}) from exc

            nonce = str(uuid4())
            update_in_phase(
                db,
                state,
                attempt=state.attempt + 1,
                attempt_nonce=nonce,
                deadline_at=utcnow() + timedelta(milliseconds=self.config.aggregation_deadline_ms),
            )
            db.commit()
        return request, ValidatorRequest(
            transaction_id=request.transaction_id,
            attempt_nonce=nonce,
            source_account=request.source_account,
            dest_account=request.dest_account,
            amount=request.amount,
            currency=request.currency,
        )

    async def _process(self, transaction_id: str, done) -> None:
        with tracer.start_as_current_span("dispatch") as span:
            span.set_attribute("transaction_id", transaction_id)
            try:
                begun = self._begin_attempt(transaction_id)
            except StructuralError as exc:
                if done is not None:
                    raise
                with self.session_factory() as db:
                    original = db.get(Orchestration, transaction_id).request
                self.dead_letters.on_failure(
                    transaction_id, DeadLetterStage.DISPATCH, original, exc.message, FailureKind.STRUCTURAL
                )
                return
            if begun is None:
                return
            request, validator_req = begun

            results = await asyncio.gather(
                *(self.transport.send(kind, validator_req) for kind in VALIDATOR_KINDS),
                return_exceptions=True,
            )
            failures = [
                f"{kind.value}: {result}" for kind, result in zip(VALIDATOR_KINDS, results) if isinstance(result, Exception)
            ]
            if failures:
                reason = "; ".join(failures)
                logger.warning("dispatch_failed transaction_id=%s reason=%s", transaction_id, reason)
                if done is not None:
                    raise TransientError(reason)
                self.dead_letters.on_failure(
                    transaction_id,
                    DeadLetterStage.DISPATCH,
                    request.model_dump(mode="json"),
                    reason,
                    FailureKind.TRANSIENT,
                )
                return

            try:
                with self.session_factory() as db:
                    state = db.get(Orchestration, transaction_id)
                    transition(db, state, AWAITING_VALIDATIONS, dispatched_at=utcnow())
                    self.audit.append(
                        db,
                        transaction_id,
                        audit.DISPATCHED,
                        {
                            "attempt": state.attempt,
                            "attempt_nonce": validator_req.attempt_nonce,
                            "deadline_at": state.deadline_at.isoformat(),
                            "source_account": request.source_account,
                        },
                    )
                    db.commit()
            except ConcurrencyConflict as exc:
                logger.warning("dispatch_conflict transaction_id=%s error=%s", transaction_id, exc)
                return
            logger.info(
                "dispatched transaction_id=%s attempt_nonce=%s partition=%s",
                transaction_id,
                validator_req.attempt_nonce,
                partition_for(request.source_account, len(self._queues)),
            )
            self.on_dispatched(transaction_id)
