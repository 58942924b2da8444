"""Validator adapters, the ledger HTTP client and the fan-out transport."""

import httpx
import pytest

from gatherpay.common.errors import InsufficientFunds, LedgerUnavailable, ReservationExpired
from gatherpay.services.orchestrator.adapters import (
    HttpLedgerClient,
    HttpValidatorAdapter,
    LedgerReservationAdapter,
    ValidatorAdapter,
)
from gatherpay.services.orchestrator.schemas import ValidatorKind, ValidatorRequest, VerdictDecision
from gatherpay.services.orchestrator.transport import FanOutTransport


def request():
    return ValidatorRequest(
        transaction_id="tx-1", attempt_nonce="n-1", source_account="A", dest_account="B", amount=100, currency="USD"
    )


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_http_validator_returns_remote_verdict():
    seen = []

    def handler(http_request):
        seen.append(http_request.url.path)
        return httpx.Response(
            200,
            json={
                "transaction_id": "tx-1",
                "attempt_nonce": "n-1",
                "validator_kind": "FRAUD",
                "decision": "DECLINE",
                "detail": "high_amount",
            },
        )

    adapter = HttpValidatorAdapter(ValidatorKind.FRAUD, "http://risk/", client=mock_client(handler))

    verdict = await adapter.evaluate(request())

    assert seen == ["/validate/fraud"]
    assert verdict.decision is VerdictDecision.DECLINE
    assert verdict.detail == "high_amount"


async def test_http_validator_folds_outage_into_error_verdict():
    calls = []

    def handler(http_request):
        calls.append(1)
        return httpx.Response(503)

    adapter = HttpValidatorAdapter(ValidatorKind.LIMIT, "http://risk", attempts=2, client=mock_client(handler))

    verdict = await adapter.evaluate(request())

    assert len(calls) == 2
    assert verdict.decision is VerdictDecision.ERROR
    assert verdict.validator_kind is ValidatorKind.LIMIT
    assert verdict.attempt_nonce == "n-1"


async def test_ledger_client_maps_error_codes():
    def handler(http_request):
        if http_request.url.path.endswith("/commit"):
            return httpx.Response(410, json={"detail": {"code": "RESERVATION_EXPIRED", "message": "expired"}})
        if http_request.url.path.endswith("/release"):
            return httpx.Response(502)
        return httpx.Response(422, json={"detail": {"code": "INSUFFICIENT_FUNDS", "message": "no funds"}})

    client = HttpLedgerClient("http://ledger", client=mock_client(handler))

    with pytest.raises(ReservationExpired):
        await client.commit("r-1", fee=0)
    with pytest.raises(LedgerUnavailable):
        await client.release("r-1")
    with pytest.raises(InsufficientFunds):
        await client.reserve("tx-1", "A", 100, "B", "USD", 60_000)


class StubLedger:
    def __init__(self, error=None, status="HELD"):
        self.error = error
        self.status = status

    async def reserve(self, **kwargs):
        if self.error is not None:
            raise self.error
        return {"reservation_id": "r-1", "status": self.status, **kwargs}


async def test_ledger_adapter_approves_with_reservation():
    verdict = await LedgerReservationAdapter(StubLedger(), attempts=1).evaluate(request())

    assert verdict.decision is VerdictDecision.APPROVE
    assert verdict.reservation_id == "r-1"


async def test_ledger_adapter_declines_on_insufficient_funds():
    verdict = await LedgerReservationAdapter(StubLedger(InsufficientFunds("no funds")), attempts=1).evaluate(request())

    assert verdict.decision is VerdictDecision.DECLINE
    assert verdict.detail == "INSUFFICIENT_FUNDS"
    assert verdict.reservation_id is None


async def test_ledger_adapter_declines_a_released_hold():
    verdict = await LedgerReservationAdapter(StubLedger(status="RELEASED"), attempts=1).evaluate(request())

    assert verdict.decision is VerdictDecision.DECLINE
    assert verdict.detail == "RESERVATION_RELEASED"
    assert verdict.reservation_id is None


async def test_ledger_adapter_errors_when_ledger_is_down():
    verdict = await LedgerReservationAdapter(StubLedger(LedgerUnavailable("down")), attempts=1).evaluate(request())

    assert verdict.decision is VerdictDecision.ERROR


def test_adapter_contract_is_abstract():
    with pytest.raises(TypeError):
        ValidatorAdapter()


class ExplodingAdapter(ValidatorAdapter):
    kind = ValidatorKind.FRAUD

    async def evaluate(self, req):
        raise RuntimeError("boom")


async def test_transport_turns_adapter_crash_into_error_verdict():
    received = []

    async def on_verdict(verdict):
        received.append(verdict)

    transport = FanOutTransport({ValidatorKind.FRAUD: ExplodingAdapter()})
    transport.bind(on_verdict)

    await transport.send(ValidatorKind.FRAUD, request())
    for task in list(transport._tasks):
        await task

    [verdict] = received
    assert verdict.decision is VerdictDecision.ERROR
    assert verdict.detail == "adapter error: boom"


async def test_transport_without_route_fails_the_send():
    with pytest.raises(RuntimeError):
        await FanOutTransport().send(ValidatorKind.LIMIT, request())
