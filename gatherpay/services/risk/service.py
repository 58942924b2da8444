"""Risk service: hosts the FRAUD and LIMIT validators.

Counters live in Redis. Both validators are idempotent on
(transaction_id, attempt_nonce): the first verdict for an attempt is cached and
returned verbatim to every retry, and the counters key on the transaction id so
a redelivered request is not counted twice.
"""

import asyncio
from datetime import datetime, timezone

import redis

from gatherpay.common.config import settings
from gatherpay.common.events import EventEnvelope, consume_forever
from gatherpay.common.logging import logger
from gatherpay.common.topics import TOPIC_FRAUD_REQUESTED, TOPIC_LIMIT_REQUESTED, TOPIC_VERDICTS
from gatherpay.services.orchestrator.schemas import ValidatorKind, ValidatorRequest, Verdict
from gatherpay.services.risk.rules import fraud_decision, limit_decision

VERDICT_CACHE_SECONDS = 3600


class RiskService:
    """Evaluates validator requests and answers with verdicts."""

    def __init__(self, redis_client=None, bus=None, config=settings, service_name: str = "risk") -> None:
        self.rdb = redis_client or redis.Redis.from_url(config.redis_url, decode_responses=True)
        self.bus = bus
        self.config = config
        self.service_name = service_name

    def _transactions_this_hour(self, account: str, transaction_id: str) -> int:
        hour_key = datetime.now(timezone.utc).strftime("%Y%m%d%H")
        velocity_key = f"velocity:{account}:{hour_key}"
        self.rdb.sadd(velocity_key, transaction_id)
        self.rdb.expire(velocity_key, 7200)
        return int(self.rdb.scard(velocity_key))

    def _spent_today(self, account: str, transaction_id: str, amount: int) -> int:
        """Sum of other transactions seen today; this one is recorded once."""

        day_key = f"spend:{account}:{datetime.now(timezone.utc).strftime('%Y%m%d')}"
        self.rdb.hsetnx(day_key, transaction_id, amount)
        self.rdb.expire(day_key, 172800)
        spent = self.rdb.hgetall(day_key)
        return sum(int(value) for tx, value in spent.items() if tx != transaction_id)

    async def evaluate(self, kind: ValidatorKind, req: ValidatorRequest) -> Verdict:
        cache_key = f"verdict:{kind.value}:{req.transaction_id}:{req.attempt_nonce}"
        cached = self.rdb.get(cache_key)
        if cached:
            return Verdict.model_validate_json(cached)

        if kind is ValidatorKind.FRAUD:
            decision, detail = fraud_decision(
                req.amount,
                self._transactions_this_hour(req.source_account, req.transaction_id),
                self.config.fraud_velocity_per_hour,
                self.config.fraud_decline_amount,
            )
        elif kind is ValidatorKind.LIMIT:
            decision, detail = limit_decision(
                req.amount,
                self._spent_today(req.source_account, req.transaction_id, req.amount),
                self.config.limit_daily_amount,
            )
        else:
            raise ValueError(f"risk service does not evaluate {kind.value}")

        verdict = Verdict(
            transaction_id=req.transaction_id,
            attempt_nonce=req.attempt_nonce,
            validator_kind=kind,
            decision=decision,
            detail=detail,
        )
        self.rdb.setex(cache_key, VERDICT_CACHE_SECONDS, verdict.model_dump_json())
        logger.info(
            "verdict_evaluated kind=%s transaction_id=%s decision=%s detail=%s",
            kind.value,
            req.transaction_id,
            decision.value,
            detail,
        )
        return verdict

    async def handle_requested(self, event: EventEnvelope) -> None:
        """Evaluate a bus-delivered validator request and publish the verdict."""

        kind = ValidatorKind(event.payload["validator_kind"])
        req = ValidatorRequest.model_validate(event.payload)
        verdict = await self.evaluate(kind, req)
        await self.bus.publish(
            TOPIC_VERDICTS,
            EventEnvelope(
                event_type=TOPIC_VERDICTS,
                aggregate_id=req.transaction_id,
                trace_id=event.trace_id,
                payload=verdict.model_dump(mode="json"),
            ),
            key=req.source_account,
        )

    async def start_consumers(self) -> None:
        """Consume fraud and limit request topics until cancelled."""

        await asyncio.gather(
            consume_forever(TOPIC_FRAUD_REQUESTED, "risk-fraud", self.handle_requested),
            consume_forever(TOPIC_LIMIT_REQUESTED, "risk-limit", self.handle_requested),
        )
