"""HTTP surface of the orchestrator."""

import random
import time
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from doubles import ALL_TOPICS, CountingLedger, RecordingBus, ScriptedAdapter, SilentAdapter
from gatherpay.common.db import Base, build_session_factory
from gatherpay.services.ledger.service import LedgerService
from gatherpay.services.orchestrator.adapters import LedgerReservationAdapter
from gatherpay.services.orchestrator.api import create_app
from gatherpay.services.orchestrator.schemas import DeadLetterStage, FailureKind, ValidatorKind
from gatherpay.services.orchestrator.service import OrchestratorService
from gatherpay.services.orchestrator.transport import FanOutTransport

FRAUD, LIMIT, LEDGER = ValidatorKind.FRAUD, ValidatorKind.LIMIT, ValidatorKind.LEDGER

PAYMENT = {"idempotency_key": "key-1", "source_account": "A", "dest_account": "B", "amount": 5000, "currency": "USD"}


@pytest.fixture
def file_session_factory(tmp_path):
    # Sync endpoints run in a worker thread, so every session needs its own connection.
    engine = create_engine(f"sqlite:///{tmp_path / 'orchestrator.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def build_client(file_session_factory, config):
    ledger_service = LedgerService(file_session_factory, config)
    ledger_service.ensure_accounts()
    ledger_service.open_account("A", 1_000_000)
    ledger_service.open_account("B", 0)
    ledger = CountingLedger(ledger_service)

    def build(adapters=None, topics=None):
        if adapters is None and topics is None:
            adapters = {
                FRAUD: ScriptedAdapter(FRAUD),
                LIMIT: ScriptedAdapter(LIMIT),
                LEDGER: LedgerReservationAdapter(ledger, attempts=1),
            }
        bus = RecordingBus()
        service = OrchestratorService(
            file_session_factory,
            FanOutTransport(adapters, topics, bus),
            ledger,
            bus,
            config=config,
            rng=random.Random(1),
        )

        @asynccontextmanager
        async def lifespan(_):
            await service.start(run_background_loops=False)
            yield
            await service.stop()

        return service, TestClient(create_app(service, lifespan=lifespan))

    return build


def wait_for_final(client, transaction_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/payments/{transaction_id}").json()
        if body["final_status"]:
            return body
        time.sleep(0.02)
    raise AssertionError(f"transaction {transaction_id} did not finish")


def test_submit_poll_and_resubmit(build_client):
    _, client = build_client()
    with client:
        resp = client.post("/payments", json=PAYMENT)
        assert resp.status_code == 202
        assert resp.json()["status"] == "SUBMITTED"
        tid = resp.json()["transaction_id"]

        body = wait_for_final(client, tid)
        assert body["final_status"] == "COMPLETED"
        assert body["phase"] == "COMPLETED"
        assert body["reason"] == "all_approved"

        audit = client.get(f"/payments/{tid}/audit").json()
        assert [event["event_type"] for event in audit][-2:] == ["decision-made", "committed"]
        assert [event["sequence"] for event in audit] == list(range(1, len(audit) + 1))

        again = client.post("/payments", json=PAYMENT)
        assert again.status_code == 200
        assert again.json() == {"transaction_id": tid, "status": "COMPLETED", "reason": "all_approved"}


def test_duplicate_while_processing_is_409(build_client):
    _, client = build_client(
        {FRAUD: ScriptedAdapter(FRAUD), LIMIT: SilentAdapter(LIMIT), LEDGER: ScriptedAdapter(LEDGER)}
    )
    with client:
        first = client.post("/payments", json=PAYMENT)
        second = client.post("/payments", json=PAYMENT)

    assert second.status_code == 409
    assert second.json() == {"transaction_id": first.json()["transaction_id"], "status": "PROCESSING", "reason": None}


def test_key_reuse_with_different_body_is_422(build_client):
    _, client = build_client()
    with client:
        client.post("/payments", json=PAYMENT)
        resp = client.post("/payments", json={**PAYMENT, "amount": 9999})

    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "IDEMPOTENCY_KEY_REUSED"


@pytest.mark.parametrize(
    "override",
    [{"amount": 0}, {"dest_account": "A"}, {"currency": "US"}, {"idempotency_key": ""}],
)
def test_malformed_payment_is_rejected(build_client, override):
    _, client = build_client()
    with client:
        resp = client.post("/payments", json={**PAYMENT, **override})

    assert resp.status_code == 422


def test_store_outage_is_503(config):
    broken = build_session_factory("sqlite://")  # no tables: every store call fails
    service = OrchestratorService(broken, FanOutTransport({}, {}, RecordingBus()), None, RecordingBus(), config=config)
    client = TestClient(create_app(service))

    resp = client.post("/payments", json=PAYMENT)

    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "IDEMPOTENCY_STORE_UNAVAILABLE"


def test_unknown_payment_is_404(build_client):
    _, client = build_client()
    with client:
        assert client.get("/payments/nope").status_code == 404
        assert client.get("/payments/nope/audit").status_code == 404


def test_verdict_callback(build_client):
    topics = ALL_TOPICS
    service, client = build_client(topics=topics)
    with client:
        tid = client.post("/payments", json=PAYMENT).json()["transaction_id"]
        deadline = time.monotonic() + 5
        while client.get(f"/payments/{tid}").json()["phase"] != "AWAITING_VALIDATIONS":
            assert time.monotonic() < deadline
            time.sleep(0.02)
        nonce = service.get_state(tid).attempt_nonce

        resp = client.post(
            "/internal/verdicts",
            json={"transaction_id": tid, "attempt_nonce": nonce, "validator_kind": "FRAUD", "decision": "DECLINE"},
        )

        assert resp.status_code == 202
        audit = client.get(f"/payments/{tid}/audit").json()
        received = [event for event in audit if event["event_type"] == "verdict-received"]
        assert [(e["payload"]["validator_kind"], e["payload"]["decision"]) for e in received] == [("FRAUD", "DECLINE")]


def test_ops_endpoints_require_api_key(build_client):
    _, client = build_client()
    with client:
        assert client.get("/ops/dead-letters").status_code == 401
        assert client.get("/ops/dead-letters", headers={"x-api-key": "wrong"}).status_code == 401


def test_ops_retry_and_resolve(build_client, config):
    service, client = build_client()
    headers = {"x-api-key": config.ops_api_key}
    envelope = service.dead_letters.on_failure(
        "tx-ops", DeadLetterStage.INGRESS, {"amount": -1}, "bad amount", FailureKind.STRUCTURAL
    )
    with client:
        listed = client.get("/ops/dead-letters", params={"status": "MANUAL_REVIEW"}, headers=headers).json()
        assert [row["id"] for row in listed] == [envelope.id]

        assert client.post("/ops/dead-letters/missing/retry", headers=headers).status_code == 404
        refused = client.post(
            f"/ops/dead-letters/{envelope.id}/resolve",
            json={"final_status": "COMPLETED", "resolved_by": "ops"},
            headers=headers,
        )
        assert refused.status_code == 422

        resolved = client.post(
            f"/ops/dead-letters/{envelope.id}/resolve",
            json={"final_status": "REJECTED", "resolved_by": "ops"},
            headers=headers,
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "RESOLVED"

        again = client.post(
            f"/ops/dead-letters/{envelope.id}/resolve",
            json={"final_status": "REJECTED", "resolved_by": "ops"},
            headers=headers,
        )
        assert again.status_code == 409
        assert client.post(f"/ops/dead-letters/{envelope.id}/retry", headers=headers).status_code == 409


def test_health_and_metrics(build_client):
    _, client = build_client()
    with client:
        assert client.get("/health").json() == {"ok": True}
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "payment_requests_total" in metrics.text
