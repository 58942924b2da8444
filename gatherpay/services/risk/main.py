"""Risk service API + worker lifecycle.

Serves FRAUD and LIMIT verdicts over HTTP for the direct transport and over
Kafka for the topic transport.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from gatherpay.common.config import settings
from gatherpay.common.events import KafkaBus
from gatherpay.common.logging import configure_logging
from gatherpay.common.metrics import metrics_response
from gatherpay.common.startup import log_startup_config
from gatherpay.common.tracing import instrument_app, setup_tracing
from gatherpay.services.orchestrator.schemas import ValidatorKind, ValidatorRequest, Verdict
from gatherpay.services.risk.service import RiskService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "kafka_bootstrap_servers",
        "redis_url",
        "fraud_velocity_per_hour",
        "fraud_decline_amount",
        "limit_daily_amount",
    ],
)
bus = KafkaBus()
service = RiskService(bus=bus)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the Kafka request consumers with the application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    await bus.close()


app = FastAPI(title="GatherPay Risk Service", lifespan=lifespan)
instrument_app(app)


@app.post("/validate/{kind}", response_model=Verdict)
async def validate(kind: str, req: ValidatorRequest):
    try:
        validator_kind = ValidatorKind(kind.upper())
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown validator {kind}") from exc
    if validator_kind is ValidatorKind.LEDGER:
        raise HTTPException(status_code=404, detail="ledger verdicts come from the ledger reservation")
    return await service.evaluate(validator_kind, req)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
