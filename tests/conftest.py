"""Shared fixtures: in-memory database, reference ledger and orchestrator factory."""

import random

import pytest

from doubles import CountingLedger, RecordingBus, ScriptedAdapter
from gatherpay.common.config import CommonSettings
from gatherpay.common.db import Base, build_session_factory
from gatherpay.services.ledger import models as ledger_models  # noqa: F401
from gatherpay.services.ledger.service import LedgerService
from gatherpay.services.orchestrator import models as orchestrator_models  # noqa: F401
from gatherpay.services.orchestrator.adapters import LedgerReservationAdapter
from gatherpay.services.orchestrator.schemas import ValidatorKind
from gatherpay.services.orchestrator.service import OrchestratorService
from gatherpay.services.orchestrator.transport import FanOutTransport


@pytest.fixture
def config():
    return CommonSettings(
        aggregation_deadline_ms=1000,
        max_retry_attempts=3,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        validator_call_attempts=1,
        commit_attempts=2,
        idempotency_record_ttl=3600,
        reservation_expiry_ms=60_000,
        partition_count=4,
        fee_basis_points=0,
    )


@pytest.fixture
def session_factory():
    factory = build_session_factory("sqlite://")
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory, config):
    service = LedgerService(session_factory, config)
    service.ensure_accounts()
    service.open_account("A", 1_000_000)
    service.open_account("B", 0)
    service.open_account("C", 1_000_000)
    return CountingLedger(service)


@pytest.fixture
def approving_adapters(ledger):
    return {
        ValidatorKind.FRAUD: ScriptedAdapter(ValidatorKind.FRAUD),
        ValidatorKind.LIMIT: ScriptedAdapter(ValidatorKind.LIMIT),
        ValidatorKind.LEDGER: LedgerReservationAdapter(ledger, attempts=1),
    }


@pytest.fixture
async def make_service(session_factory, ledger, config, approving_adapters):
    created = []

    async def factory(adapters=None, topics=None, bus=None, cfg=None, start=True):
        bus = bus or RecordingBus()
        if adapters is None and topics is None:
            adapters = approving_adapters
        transport = FanOutTransport(adapters, topics, bus)
        service = OrchestratorService(
            session_factory, transport, ledger, bus, config=cfg or config, rng=random.Random(7)
        )
        if start:
            await service.start(run_background_loops=False)
        created.append(service)
        return service

    yield factory
    for service in created:
        await service.stop()
