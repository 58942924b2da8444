"""Fan-out transport for validator requests.

A validator kind is served either by a direct adapter (called as its own task,
the verdict handed straight back to the orchestrator) or by a Kafka topic
(verdicts come back on `validation.verdicts`). Both satisfy the same contract:
`send` returns once the request is handed off, and the verdict arrives later.
"""

import asyncio

from gatherpay.common.events import EventEnvelope
from gatherpay.common.logging import logger, trace_id_ctx
from gatherpay.services.orchestrator.schemas import ValidatorKind, ValidatorRequest, Verdict, VerdictDecision


class FanOutTransport:
    def __init__(self, direct_adapters: dict | None = None, topics: dict | None = None, bus=None) -> None:
        self.direct_adapters = dict(direct_adapters or {})
        self.topics = dict(topics or {})
        self.bus = bus
        self._on_verdict = None
        self._tasks: set[asyncio.Task] = set()

    def bind(self, on_verdict) -> None:
        """Register the coroutine that receives verdicts from direct adapters."""

        self._on_verdict = on_verdict

    async def send(self, kind: ValidatorKind, req: ValidatorRequest) -> None:
        adapter = self.direct_adapters.get(kind)
        if adapter is not None:
            task = asyncio.create_task(self._run_adapter(adapter, req))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        topic = self.topics.get(kind)
        if topic is None or self.bus is None:
            raise RuntimeError(f"no route configured for validator {kind.value}")
        await self.bus.publish(
            topic,
            EventEnvelope(
                event_type=topic,
                aggregate_id=req.transaction_id,
                trace_id=trace_id_ctx.get(),
                payload={**req.model_dump(mode="json"), "validator_kind": kind.value},
            ),
            key=req.source_account,
        )

    async def _run_adapter(self, adapter, req: ValidatorRequest) -> None:
        try:
            verdict = await adapter.evaluate(req)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("validator_adapter_error kind=%s transaction_id=%s", adapter.kind.value, req.transaction_id)
            verdict = Verdict(
                transaction_id=req.transaction_id,
                attempt_nonce=req.attempt_nonce,
                validator_kind=adapter.kind,
                decision=VerdictDecision.ERROR,
                detail=f"adapter error: {exc}",
            )
        if self._on_verdict is None:
            logger.error("verdict_dropped_unbound transaction_id=%s kind=%s", req.transaction_id, adapter.kind.value)
            return
        await self._on_verdict(verdict)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
