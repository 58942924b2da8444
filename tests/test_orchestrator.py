"""End-to-end orchestration scenarios against the reference ledger."""

import asyncio
import time
from datetime import timedelta
from itertools import product

import pytest
from sqlalchemy import func, select, update

from doubles import ALL_TOPICS, DelayedAdapter, RecordingBus, ScriptedAdapter, SilentAdapter
from gatherpay.common.db import utcnow
from gatherpay.common.events import EventEnvelope
from gatherpay.common.state_machine import AWAITING_VALIDATIONS, COMPLETED, DECIDED, EXECUTING, REJECTED
from gatherpay.common.topics import TOPIC_CONFIRMED
from gatherpay.services.ledger.service import COMMITTED, HELD, RELEASED
from gatherpay.services.orchestrator.adapters import LedgerReservationAdapter
from gatherpay.services.orchestrator.decision import PROCEED, decide
from gatherpay.services.orchestrator.models import AuditEvent, DeadLetter, InboxEvent, Orchestration, OutboxEvent, TransactionRecord
from gatherpay.services.orchestrator.schemas import (
    AdmitStatus,
    PaymentCreateRequest,
    ValidatorKind,
    Verdict,
    VerdictDecision,
)

FRAUD, LIMIT, LEDGER = ValidatorKind.FRAUD, ValidatorKind.LIMIT, ValidatorKind.LEDGER
APPROVE, DECLINE = VerdictDecision.APPROVE, VerdictDecision.DECLINE


def create(key="key-1", amount=5000, source="A", dest="B"):
    return PaymentCreateRequest(
        idempotency_key=key, source_account=source, dest_account=dest, amount=amount, currency="USD"
    )


def event_types(service, transaction_id):
    return [event.event_type for event in service.audit_trail(transaction_id)]


def verdict_for(state, kind, decision=APPROVE, reservation_id=None, offset_ms=0):
    return Verdict(
        transaction_id=state.transaction_id,
        attempt_nonce=state.attempt_nonce,
        validator_kind=kind,
        decision=decision,
        reservation_id=reservation_id,
        received_at=utcnow() + timedelta(milliseconds=offset_ms),
    )


async def dispatched(service, key="key-1", amount=5000):
    result = await service.submit(create(key, amount))
    await service.router.drain()
    state = service.get_state(result.transaction_id)
    assert state.phase == AWAITING_VALIDATIONS
    return state


async def reserve(ledger, state, amount=5000):
    reservation = await ledger.reserve(
        transaction_id=state.transaction_id, source_account="A", amount=amount, dest_account="B", currency="USD"
    )
    return reservation["reservation_id"]


def record_count(service):
    with service.session_factory() as db:
        return db.query(TransactionRecord).count()


async def test_happy_path_completes_once_with_full_audit(make_service, ledger):
    adapters = {
        FRAUD: ScriptedAdapter(FRAUD, delay=0.08),
        LIMIT: ScriptedAdapter(LIMIT, delay=0.06),
        LEDGER: DelayedAdapter(LedgerReservationAdapter(ledger, attempts=1), 0.15),
    }
    service = await make_service(adapters)

    started = time.monotonic()
    outcome = await service.submit_and_wait(create(), timeout=5)
    elapsed = time.monotonic() - started

    assert outcome["status"] == "COMPLETED"
    assert outcome["reason"] == "all_approved"
    assert elapsed < 1.0
    tid = outcome["transaction_id"]
    types = event_types(service, tid)
    assert types == [
        "dispatched",
        "verdict-received",
        "verdict-received",
        "verdict-received",
        "decision-made",
        "committed",
    ]
    kinds = [e.payload["validator_kind"] for e in service.audit_trail(tid) if e.event_type == "verdict-received"]
    assert kinds == ["LIMIT", "FRAUD", "LEDGER"]

    assert await service.publisher.publish_pending() == 1
    confirmations = service.bus.on(TOPIC_CONFIRMED)
    assert len(confirmations) == 1
    assert confirmations[0].payload["transaction_id"] == tid
    assert confirmations[0].payload["final_status"] == "COMPLETED"
    committed = service.audit_trail(tid)[-1]
    assert committed.payload["confirmation_event_id"] == confirmations[0].event_id

    state = service.get_state(tid)
    assert state.phase == COMPLETED
    assert state.archived_at is not None
    assert ledger.inner.get_account("A").balance == 1_000_000 - 5000
    assert ledger.inner.get_account("B").balance == 5000
    assert ledger.count("commit") == 1


async def test_publishing_twice_sends_one_confirmation(make_service):
    service = await make_service()
    await service.submit_and_wait(create(), timeout=5)

    await service.publisher.publish_pending()
    await service.publisher.publish_pending()

    assert len(service.bus.on(TOPIC_CONFIRMED)) == 1


async def test_missing_verdict_times_out_and_releases(make_service, ledger, config):
    adapters = {
        FRAUD: ScriptedAdapter(FRAUD),
        LIMIT: SilentAdapter(LIMIT),
        LEDGER: LedgerReservationAdapter(ledger, attempts=1),
    }
    service = await make_service(adapters, cfg=config.model_copy(update={"aggregation_deadline_ms": 300}))

    started = time.monotonic()
    outcome = await service.submit_and_wait(create(), timeout=5)
    elapsed = time.monotonic() - started

    assert outcome["status"] == "REJECTED"
    assert outcome["reason"] == "limit_missing"
    assert 0.25 <= elapsed < 1.5
    tid = outcome["transaction_id"]
    types = event_types(service, tid)
    assert "timed-out" in types
    assert types[-2:] == ["decision-made", "released"]
    timed_out = next(e for e in service.audit_trail(tid) if e.event_type == "timed-out")
    assert timed_out.payload["missing"] == ["LIMIT"]

    state = service.get_state(tid)
    assert ledger.inner.get_reservation(state.reservation_id).status == RELEASED
    assert ledger.count("commit") == 0
    assert ledger.inner.get_account("A").balance == 1_000_000


async def test_duplicate_verdicts_commit_once(make_service, ledger):
    service = await make_service(topics=ALL_TOPICS)
    state = await dispatched(service)
    reservation_id = await reserve(ledger, state)
    ledger_verdict = verdict_for(state, LEDGER, reservation_id=reservation_id)

    await service.handle_verdict(verdict_for(state, FRAUD))
    await service.handle_verdict(verdict_for(state, LIMIT))
    await asyncio.gather(
        service.handle_verdict(ledger_verdict),
        service.handle_verdict(ledger_verdict),
        service.handle_verdict(ledger_verdict.model_copy(update={"verdict_id": "redelivered"})),
    )
    outcome = await service.wait_for_outcome(state.transaction_id, timeout=5)

    assert outcome["status"] == "COMPLETED"
    assert ledger.count("commit") == 1
    assert record_count(service) == 1

    await service.handle_verdict(verdict_for(state, FRAUD, DECLINE))
    assert event_types(service, state.transaction_id)[-1] == "ignored-late"
    assert service.get_record(state.transaction_id).final_status == "COMPLETED"
    assert ledger.count("commit") == 1


async def test_changed_verdict_releases_reservation(make_service, ledger):
    service = await make_service(topics=ALL_TOPICS)
    state = await dispatched(service)
    reservation_id = await reserve(ledger, state)

    await service.handle_verdict(verdict_for(state, FRAUD))
    await service.handle_verdict(verdict_for(state, LIMIT))
    await service.handle_verdict(verdict_for(state, LIMIT, DECLINE, offset_ms=10))
    await service.handle_verdict(verdict_for(state, LEDGER, reservation_id=reservation_id, offset_ms=20))
    outcome = await service.wait_for_outcome(state.transaction_id, timeout=5)

    assert outcome == {"transaction_id": state.transaction_id, "status": "REJECTED", "reason": "limit_declined"}
    assert ledger.count("commit") == 0
    assert ledger.inner.get_reservation(reservation_id).status == RELEASED
    released = service.audit_trail(state.transaction_id)[-1]
    assert released.event_type == "released"
    assert released.payload["released"] is True
    assert service.get_state(state.transaction_id).phase == REJECTED


async def test_older_verdict_does_not_overwrite_newer(make_service, ledger):
    service = await make_service(topics=ALL_TOPICS)
    state = await dispatched(service)

    await service.handle_verdict(verdict_for(state, LIMIT, DECLINE, offset_ms=50))
    await service.handle_verdict(verdict_for(state, LIMIT, APPROVE, offset_ms=0))

    assert event_types(service, state.transaction_id)[-1] == "ignored-stale"


async def test_verdict_for_previous_attempt_is_ignored(make_service):
    service = await make_service(topics=ALL_TOPICS)
    state = await dispatched(service)
    stale = verdict_for(state, FRAUD).model_copy(update={"attempt_nonce": "previous-attempt"})

    await service.handle_verdict(stale)

    assert event_types(service, state.transaction_id)[-1] == "ignored-stale"


async def test_late_reservation_is_released_as_orphan(make_service, ledger, config):
    service = await make_service(topics=ALL_TOPICS, cfg=config.model_copy(update={"aggregation_deadline_ms": 100}))
    state = await dispatched(service)
    outcome = await service.wait_for_outcome(state.transaction_id, timeout=5)
    assert outcome["reason"] == "fraud_missing"

    reservation_id = await reserve(ledger, state)
    await service.handle_verdict(verdict_for(state, LEDGER, reservation_id=reservation_id))

    assert ledger.inner.get_reservation(reservation_id).status == RELEASED
    assert event_types(service, state.transaction_id)[-2:] == ["ignored-late", "orphan-released"]


async def test_concurrent_resubmissions_share_one_transaction(make_service, ledger):
    service = await make_service()

    outcomes = await asyncio.gather(*(service.submit_and_wait(create(), timeout=5) for _ in range(10)))

    assert len({o["transaction_id"] for o in outcomes}) == 1
    assert all(o["status"] == "COMPLETED" for o in outcomes)
    assert record_count(service) == 1
    assert ledger.count("reserve") == 1
    assert ledger.count("commit") == 1


async def test_resubmission_after_completion_makes_no_new_calls(make_service, ledger, approving_adapters):
    service = await make_service()
    first = await service.submit_and_wait(create(), timeout=5)
    fraud_calls = len(approving_adapters[FRAUD].calls)
    ledger_calls = list(ledger.calls)

    result = await service.submit(create())

    assert result.status is AdmitStatus.DUPLICATE_COMPLETED
    assert result.outcome == first
    assert await service.submit_and_wait(create(), timeout=5) == first
    assert len(approving_adapters[FRAUD].calls) == fraud_calls
    assert ledger.calls == ledger_calls


async def test_payments_from_one_account_keep_submission_order(make_service):
    bus = RecordingBus()
    service = await make_service(topics=ALL_TOPICS, bus=bus)

    submitted = []
    for i in range(6):
        source = "A" if i % 2 == 0 else "C"
        result = await service.submit(create(f"key-{i}", source=source))
        submitted.append((source, result.transaction_id))
    await service.router.drain()

    for account in ("A", "C"):
        expected = [tid for source, tid in submitted if source == account]
        fanned_out = [event.aggregate_id for event in bus.on(ALL_TOPICS[FRAUD]) if event.payload["source_account"] == account]
        assert fanned_out == expected
    assert all(key == event.payload["source_account"] for _, event, key in bus.published)


async def test_restart_resumes_collection_without_redeciding(make_service, ledger):
    first = await make_service(topics=ALL_TOPICS)
    state = await dispatched(first)
    await first.handle_verdict(verdict_for(state, FRAUD))
    await first.handle_verdict(verdict_for(state, LIMIT))
    await first.stop()

    second = await make_service(topics=ALL_TOPICS)
    reservation_id = await reserve(ledger, state)
    await second.handle_verdict(verdict_for(state, LEDGER, reservation_id=reservation_id))
    outcome = await second.wait_for_outcome(state.transaction_id, timeout=5)

    assert outcome["status"] == "COMPLETED"
    assert event_types(second, state.transaction_id).count("decision-made") == 1
    assert ledger.count("commit") == 1


@pytest.mark.parametrize("fraud,limit,ledger_decision", list(product(VerdictDecision, repeat=3)))
async def test_decision_matrix_end_to_end(make_service, ledger, fraud, limit, ledger_decision):
    if ledger_decision is APPROVE:
        ledger_adapter = LedgerReservationAdapter(ledger, attempts=1)
    else:
        ledger_adapter = ScriptedAdapter(LEDGER, ledger_decision)
    service = await make_service(
        {FRAUD: ScriptedAdapter(FRAUD, fraud), LIMIT: ScriptedAdapter(LIMIT, limit), LEDGER: ledger_adapter}
    )

    outcome = await service.submit_and_wait(create(), timeout=5)

    expected = decide({FRAUD: fraud, LIMIT: limit, LEDGER: ledger_decision})
    assert outcome["status"] == ("COMPLETED" if expected.outcome == PROCEED else "REJECTED")
    assert outcome["reason"] == expected.reason
    assert ledger.count("commit") == (1 if expected.outcome == PROCEED else 0)
    if ledger_decision is APPROVE and expected.outcome != PROCEED:
        reservation_id = service.get_state(outcome["transaction_id"]).reservation_id
        assert ledger.inner.get_reservation(reservation_id).status == RELEASED


async def test_malformed_bus_submission_is_dead_lettered(make_service):
    service = await make_service()
    event = EventEnvelope(
        event_type="payments.submitted", aggregate_id="key-9", payload={"idempotency_key": "key-9", "amount": -5}
    )

    await service._consume_submission(event)

    [envelope] = service.dead_letters.list_envelopes()
    assert envelope.stage == "INGRESS"
    assert envelope.status == "MANUAL_REVIEW"
    assert envelope.original_request == event.payload


async def test_bus_submission_is_admitted(make_service):
    service = await make_service()
    event = EventEnvelope(event_type="payments.submitted", aggregate_id="key-9", payload=create("key-9").model_dump())

    await service._consume_submission(event)
    await service._consume_submission(event)
    with service.session_factory() as db:
        transaction_id = service.gate.lookup(db, "key-9").transaction_id

    outcome = await service.wait_for_outcome(transaction_id, timeout=5)

    assert outcome["status"] == "COMPLETED"
    assert record_count(service) == 1
    assert service.dead_letters.list_envelopes() == []


async def test_maintenance_purges_expired_idempotency_records(make_service, config):
    service = await make_service(cfg=config.model_copy(update={"idempotency_record_ttl": 0}))
    await service.submit_and_wait(create(), timeout=5)

    purged = service.run_maintenance()

    assert purged["idempotency_records"] == 1
    assert (await service.submit(create())).status is AdmitStatus.NEW


async def test_maintenance_purges_audit_events_past_retention(make_service, config):
    service = await make_service(cfg=config.model_copy(update={"audit_retention_days": 30}))
    old = (await service.submit_and_wait(create("old"), timeout=5))["transaction_id"]
    fresh = (await service.submit_and_wait(create("fresh"), timeout=5))["transaction_id"]
    with service.session_factory() as db:
        db.execute(
            update(AuditEvent)
            .where(AuditEvent.transaction_id == old)
            .values(created_at=utcnow() - timedelta(days=31))
        )
        db.commit()

    purged = service.run_maintenance()

    assert purged["audit_events"] == 6
    assert service.audit_trail(old) == []
    assert len(service.audit_trail(fresh)) == 6


async def test_maintenance_purges_consumed_and_delivered_events(make_service, config):
    service = await make_service(cfg=config.model_copy(update={"event_retention_days": 7}))
    await service.submit_and_wait(create("sent"), timeout=5)
    await service.publisher.publish_pending()
    await service.submit_and_wait(create("pending"), timeout=5)
    long_ago = utcnow() - timedelta(days=8)
    with service.session_factory() as db:
        consumed = db.scalar(select(func.count()).select_from(InboxEvent))
        sent = db.scalar(select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == "SENT"))
        pending = db.scalar(select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == "PENDING"))
        db.execute(update(InboxEvent).values(consumed_at=long_ago))
        db.execute(update(OutboxEvent).where(OutboxEvent.status == "SENT").values(sent_at=long_ago))
        db.commit()
    assert consumed >= 6
    assert sent >= 1 and pending >= 1

    purged = service.run_maintenance()

    assert purged["inbox_events"] == consumed
    assert purged["outbox_events"] == sent
    with service.session_factory() as db:
        assert db.scalar(select(func.count()).select_from(InboxEvent)) == 0
        assert db.scalar(select(func.count()).select_from(OutboxEvent)) == pending


async def test_recent_events_survive_maintenance(make_service):
    service = await make_service()
    await service.submit_and_wait(create(), timeout=5)
    await service.publisher.publish_pending()

    purged = service.run_maintenance()

    assert purged["inbox_events"] == 0
    assert purged["outbox_events"] == 0


async def test_waiting_leaves_no_signal_behind(make_service, ledger, config):
    adapters = {
        FRAUD: ScriptedAdapter(FRAUD),
        LIMIT: SilentAdapter(LIMIT),
        LEDGER: LedgerReservationAdapter(ledger, attempts=1),
    }
    service = await make_service(adapters, cfg=config.model_copy(update={"aggregation_deadline_ms": 300}))
    result = await service.submit(create())
    tid = result.transaction_id

    short, full = await asyncio.gather(
        service.wait_for_outcome(tid, timeout=0.05), service.wait_for_outcome(tid, timeout=5)
    )

    assert short is None
    assert full["reason"] == "limit_missing"
    assert await service.wait_for_outcome(tid, timeout=1) == full
    assert service._terminal == {}
    assert service._waiters == {}


async def test_timed_out_wait_forgets_the_transaction(make_service):
    service = await make_service(topics=ALL_TOPICS)
    state = await dispatched(service)

    assert await service.wait_for_outcome(state.transaction_id, timeout=0.05) is None
    assert state.transaction_id not in service._terminal
    assert state.transaction_id not in service._waiters


async def test_failed_release_rejects_now_and_releases_on_retry(make_service, ledger, config):
    ledger.fail_releases = config.commit_attempts
    adapters = {
        FRAUD: ScriptedAdapter(FRAUD, DECLINE),
        LIMIT: ScriptedAdapter(LIMIT),
        LEDGER: LedgerReservationAdapter(ledger, attempts=1),
    }
    service = await make_service(adapters)

    outcome = await service.submit_and_wait(create(), timeout=5)

    tid = outcome["transaction_id"]
    assert outcome == {"transaction_id": tid, "status": "REJECTED", "reason": "fraud_declined"}
    reservation_id = service.get_state(tid).reservation_id
    assert ledger.inner.get_reservation(reservation_id).status == HELD
    [envelope] = service.dead_letters.list_envelopes()
    assert envelope.stage == "RELEASE"
    assert envelope.status == "PENDING_RETRY"
    assert envelope.original_request == {"reservation_id": reservation_id}
    released = service.audit_trail(tid)[-1]
    assert released.event_type == "released"
    assert released.payload["released"] is False

    with service.session_factory() as db:
        db.get(DeadLetter, envelope.id).next_retry_at = utcnow() - timedelta(seconds=1)
        db.commit()
    await service.dead_letters.run_due()

    assert ledger.inner.get_reservation(reservation_id).status == RELEASED
    assert ledger.inner.get_account("A").balance == 1_000_000
    assert service.dead_letters.list_envelopes() == []
    assert event_types(service, tid)[-1] == "released"
    assert service.get_record(tid).final_status == "REJECTED"
    assert ledger.count("commit") == 0


async def test_late_approval_of_a_released_hold_is_released_again(make_service, ledger):
    adapters = {
        FRAUD: ScriptedAdapter(FRAUD, DECLINE),
        LIMIT: ScriptedAdapter(LIMIT),
        LEDGER: LedgerReservationAdapter(ledger, attempts=1),
    }
    service = await make_service(adapters)
    outcome = await service.submit_and_wait(create(), timeout=5)
    state = service.get_state(outcome["transaction_id"])
    assert ledger.inner.get_reservation(state.reservation_id).status == RELEASED

    again = await reserve(ledger, state)
    releases = ledger.count("release")
    await service.handle_verdict(verdict_for(state, LEDGER, reservation_id=state.reservation_id))

    assert again == state.reservation_id
    assert ledger.inner.get_reservation(again).status == RELEASED
    assert ledger.count("release") == releases + 1
    assert event_types(service, state.transaction_id)[-2:] == ["ignored-late", "orphan-released"]
    assert ledger.inner.get_account("A").balance == 1_000_000
    assert service.get_record(state.transaction_id).final_status == "REJECTED"


async def test_restart_carries_out_stored_decisions(make_service, ledger):
    first = await make_service(topics=ALL_TOPICS)
    proceeding = await dispatched(first, "key-1")
    rejecting = await dispatched(first, "key-2")
    await first.stop()
    stored = {
        proceeding.transaction_id: {"phase": DECIDED, "decision": PROCEED, "decision_reason": "all_approved"},
        rejecting.transaction_id: {"phase": EXECUTING, "decision": "REJECTED", "decision_reason": "fraud_declined"},
    }
    reservations = {}
    for state in (proceeding, rejecting):
        reservations[state.transaction_id] = await reserve(ledger, state)
    with first.session_factory() as db:
        for tid, values in stored.items():
            db.execute(
                update(Orchestration)
                .where(Orchestration.transaction_id == tid)
                .values(reservation_id=reservations[tid], **values)
            )
        db.commit()

    second = await make_service(topics=ALL_TOPICS)
    completed = await second.wait_for_outcome(proceeding.transaction_id, timeout=5)
    rejected = await second.wait_for_outcome(rejecting.transaction_id, timeout=5)

    assert completed == {"transaction_id": proceeding.transaction_id, "status": "COMPLETED", "reason": "all_approved"}
    assert rejected == {"transaction_id": rejecting.transaction_id, "status": "REJECTED", "reason": "fraud_declined"}
    assert ledger.count("commit") == 1
    assert ledger.count("release") == 1
    assert ledger.inner.get_reservation(reservations[proceeding.transaction_id]).status == COMMITTED
    assert ledger.inner.get_reservation(reservations[rejecting.transaction_id]).status == RELEASED
    assert record_count(second) == 2
    for tid in stored:
        assert "decision-made" not in event_types(second, tid)
    assert event_types(second, proceeding.transaction_id)[-1] == "committed"
    assert event_types(second, rejecting.transaction_id)[-1] == "released"
