"""HTTP surface for payment submission, reads, verdict callbacks and ops."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from gatherpay.common.errors import (
    DeadLetterNotFound,
    DeadLetterResolved,
    IdempotencyConflict,
    IdempotencyStoreUnavailable,
    InvalidTransition,
    LedgerError,
    TransientError,
)
from gatherpay.common.logging import logger, trace_id_ctx
from gatherpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from gatherpay.services.orchestrator.schemas import (
    AdmitStatus,
    AuditEventView,
    DeadLetterStatus,
    DeadLetterView,
    PaymentCreateRequest,
    ResolveRequest,
    SubmitResponse,
    Verdict,
)


def create_app(service, lifespan=None) -> FastAPI:
    """Build the orchestrator app around an `OrchestratorService`."""

    app = FastAPI(title="GatherPay Orchestrator", lifespan=lifespan)
    service_name = service.service_name

    def enforce_api_key(x_api_key: str | None) -> None:
        if x_api_key != service.config.ops_api_key:
            raise HTTPException(status_code=401, detail="invalid API key")

    @app.middleware("http")
    async def trace_and_metrics(request: Request, call_next):
        """Bind a trace id for the request and record count/latency."""

        token = trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers["x-trace-id"] = trace_id_ctx.get()
            return response
        finally:
            http_request_duration_seconds.labels(service=service_name, route=route, method=request.method).observe(
                max(0.0, perf_counter() - start)
            )
            http_requests_total.labels(
                service=service_name, route=route, method=request.method, status_code=str(status_code)
            ).inc()
            trace_id_ctx.reset(token)

    @app.post("/payments", status_code=202)
    async def submit_payment(req: PaymentCreateRequest):
        """Admit a payment: 202 new, 200 cached outcome, 409 still processing."""

        try:
            result = await service.submit(req)
        except IdempotencyConflict as exc:
            raise HTTPException(status_code=422, detail=exc.to_dict()) from exc
        except IdempotencyStoreUnavailable as exc:
            raise HTTPException(status_code=503, detail=exc.to_dict()) from exc

        if result.status is AdmitStatus.DUPLICATE_COMPLETED:
            return JSONResponse(status_code=200, content=result.outcome)
        if result.status is AdmitStatus.DUPLICATE_IN_FLIGHT:
            return JSONResponse(
                status_code=409,
                content=SubmitResponse(transaction_id=result.transaction_id, status="PROCESSING").model_dump(),
            )
        return SubmitResponse(transaction_id=result.transaction_id, status="SUBMITTED").model_dump()

    @app.get("/payments/{transaction_id}")
    def get_payment(transaction_id: str):
        state = service.get_state(transaction_id)
        if state is None:
            raise HTTPException(status_code=404, detail="payment not found")
        record = service.get_record(transaction_id)
        return {
            "transaction_id": state.transaction_id,
            "phase": state.phase,
            "attempt": state.attempt,
            "decision": state.decision,
            "decision_reason": state.decision_reason,
            "reservation_id": state.reservation_id,
            "final_status": record.final_status if record else None,
            "reason": record.reason if record else None,
            "completed_at": record.completed_at if record else None,
        }

    @app.get("/payments/{transaction_id}/audit", response_model=list[AuditEventView])
    def get_audit(transaction_id: str):
        events = service.audit_trail(transaction_id)
        if not events:
            raise HTTPException(status_code=404, detail="no audit trail for transaction")
        return [AuditEventView.model_validate(event) for event in events]

    @app.post("/internal/verdicts", status_code=202)
    async def receive_verdict(verdict: Verdict):
        """Asynchronous verdict callback for validators reached over HTTP."""

        await service.handle_verdict(verdict)
        return {"accepted": True, "verdict_id": verdict.verdict_id}

    @app.get("/ops/dead-letters", response_model=list[DeadLetterView])
    def list_dead_letters(
        status: DeadLetterStatus | None = None,
        limit: int = 100,
        x_api_key: str | None = Header(default=None),
    ):
        enforce_api_key(x_api_key)
        return [DeadLetterView.model_validate(row) for row in service.dead_letters.list_envelopes(status, limit)]

    @app.post("/ops/dead-letters/{envelope_id}/retry", response_model=DeadLetterView)
    def retry_dead_letter(envelope_id: str, x_api_key: str | None = Header(default=None)):
        """Re-arm an envelope for immediate retry with a fresh attempt budget."""

        enforce_api_key(x_api_key)
        envelope = service.dead_letters.requeue(envelope_id)
        if envelope is None:
            raise HTTPException(status_code=404, detail="dead letter not found")
        if envelope.status == DeadLetterStatus.RESOLVED.value:
            raise HTTPException(status_code=409, detail="dead letter already resolved")
        return DeadLetterView.model_validate(envelope)

    @app.post("/ops/dead-letters/{envelope_id}/resolve", response_model=DeadLetterView)
    async def resolve_dead_letter(
        envelope_id: str,
        req: ResolveRequest,
        x_api_key: str | None = Header(default=None),
    ):
        """Finalize the transaction behind an envelope as REJECTED or FAILED."""

        enforce_api_key(x_api_key)
        try:
            envelope = await service.resolve_dead_letter(envelope_id, req.final_status, req.resolved_by)
        except DeadLetterNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.to_dict()) from exc
        except (DeadLetterResolved, InvalidTransition) as exc:
            logger.warning("resolve_rejected dead_letter_id=%s error=%s", envelope_id, exc)
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (LedgerError, TransientError) as exc:
            raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
        return DeadLetterView.model_validate(envelope)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
