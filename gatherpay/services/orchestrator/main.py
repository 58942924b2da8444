"""Orchestrator process: wires real infrastructure into the service and app."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatherpay.common.config import settings
from gatherpay.common.db import build_session_factory
from gatherpay.common.events import KafkaBus
from gatherpay.common.logging import configure_logging
from gatherpay.common.startup import log_startup_config
from gatherpay.common.topics import VALIDATION_TOPICS
from gatherpay.common.tracing import instrument_app, setup_tracing
from gatherpay.services.orchestrator.adapters import HttpLedgerClient, HttpValidatorAdapter, LedgerReservationAdapter
from gatherpay.services.orchestrator.api import create_app
from gatherpay.services.orchestrator.schemas import ValidatorKind
from gatherpay.services.orchestrator.service import OrchestratorService
from gatherpay.services.orchestrator.transport import FanOutTransport

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "database_dsn",
        "kafka_bootstrap_servers",
        "ledger_url",
        "risk_url",
        "validation_transport",
        "aggregation_deadline_ms",
        "max_retry_attempts",
        "retry_base_delay_ms",
        "idempotency_record_ttl",
        "reservation_expiry_ms",
        "ops_api_key",
    ],
)

SessionLocal = build_session_factory(settings.database_dsn)
bus = KafkaBus()
ledger = HttpLedgerClient(settings.ledger_url)

# The ledger reservation is always a direct call; fraud and limit follow VALIDATION_TRANSPORT.
direct = {ValidatorKind.LEDGER: LedgerReservationAdapter(ledger)}
topics = {}
if settings.validation_transport == "kafka":
    topics = {ValidatorKind(kind): topic for kind, topic in VALIDATION_TOPICS.items()}
else:
    direct[ValidatorKind.FRAUD] = HttpValidatorAdapter(ValidatorKind.FRAUD, settings.risk_url)
    direct[ValidatorKind.LIMIT] = HttpValidatorAdapter(ValidatorKind.LIMIT, settings.risk_url)

service = OrchestratorService(SessionLocal, FanOutTransport(direct, topics, bus), ledger, bus)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Recover in-flight work and run background loops with the app lifecycle."""

    await service.start(consume_kafka=True)
    yield
    await service.stop()
    await bus.close()


app = create_app(service, lifespan=lifespan)
instrument_app(app)
