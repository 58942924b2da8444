"""Publish a validator verdict onto the verdicts topic.

Useful for fault injection: duplicate verdicts (`--copies`, same verdict id),
recomputed verdicts (`--fresh-id`) and late verdicts after a decision.
"""

import argparse
import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

from aiokafka import AIOKafkaProducer

VERDICTS_TOPIC = "validation.verdicts"


async def publish(bootstrap_servers: str, envelopes: list[dict], key: str | None) -> None:
    """Open producer, publish the envelopes in order, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        for envelope in envelopes:
            await producer.send_and_wait(
                VERDICTS_TOPIC,
                json.dumps(envelope).encode("utf-8"),
                key=key.encode("utf-8") if key else None,
            )
    finally:
        await producer.stop()


def build_envelope(verdict: dict) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": VERDICTS_TOPIC,
        "aggregate_id": verdict["transaction_id"],
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "trace_id": "",
        "payload": verdict,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a verdict to validation.verdicts.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--transaction-id", required=True)
    parser.add_argument("--attempt-nonce", required=True)
    parser.add_argument("--kind", choices=["FRAUD", "LIMIT", "LEDGER"], required=True)
    parser.add_argument("--decision", choices=["APPROVE", "DECLINE", "ERROR"], required=True)
    parser.add_argument("--detail", default="injected")
    parser.add_argument("--reservation-id", default=None)
    parser.add_argument("--source-account", default=None, help="Partition key")
    parser.add_argument("--copies", type=int, default=1, help="Publish the same verdict this many times")
    parser.add_argument("--fresh-id", action="store_true", help="Give every copy its own verdict id")
    args = parser.parse_args()

    envelopes = []
    verdict_id = str(uuid4())
    for _ in range(args.copies):
        verdict = {
            "verdict_id": str(uuid4()) if args.fresh_id else verdict_id,
            "transaction_id": args.transaction_id,
            "attempt_nonce": args.attempt_nonce,
            "validator_kind": args.kind,
            "decision": args.decision,
            "detail": args.detail,
            "reservation_id": args.reservation_id,
            "received_at": datetime.now(timezone.utc).isoformat(),
        }
        envelopes.append(build_envelope(verdict))

    asyncio.run(publish(args.bootstrap_servers, envelopes, args.source_account))
    print(f"Published {len(envelopes)} verdict(s) for transaction_id={args.transaction_id}")


if __name__ == "__main__":
    main()
