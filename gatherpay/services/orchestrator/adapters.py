"""Validator adapters and the ledger client.

Every adapter answers one `ValidatorRequest` with one `Verdict`. Transport
failures are retried inside the adapter a small number of times; once the
retries are exhausted the failure is folded into the aggregation as an ERROR
verdict instead of being raised to the orchestrator.
"""

from abc import ABC, abstractmethod

import httpx

from gatherpay.common.config import settings
from gatherpay.common.errors import (
    LEDGER_ERRORS_BY_CODE,
    GatherPayError,
    InsufficientFunds,
    LedgerError,
    LedgerUnavailable,
    TransientError,
)
from gatherpay.common.logging import logger
from gatherpay.common.retry import call_with_retries
from gatherpay.services.orchestrator.schemas import ValidatorKind, ValidatorRequest, Verdict, VerdictDecision


def _verdict(req: ValidatorRequest, kind: ValidatorKind, decision: VerdictDecision, detail: str, **extra) -> Verdict:
    return Verdict(
        transaction_id=req.transaction_id,
        attempt_nonce=req.attempt_nonce,
        validator_kind=kind,
        decision=decision,
        detail=detail,
        **extra,
    )


class ValidatorAdapter(ABC):
    """Uniform request/verdict contract for one validator kind."""

    kind: ValidatorKind

    @abstractmethod
    async def evaluate(self, req: ValidatorRequest) -> Verdict:
        """Answer one request with one verdict for this adapter's kind."""


class HttpValidatorAdapter(ValidatorAdapter):
    """Calls a remote validator over HTTP (`POST {base_url}/validate/{kind}`)."""

    def __init__(
        self,
        kind: ValidatorKind,
        base_url: str,
        attempts: int | None = None,
        timeout_ms: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.kind = kind
        self.base_url = base_url.rstrip("/")
        self.attempts = attempts or settings.validator_call_attempts
        self.timeout = (timeout_ms or settings.validator_timeout_ms) / 1000
        self._client = client

    async def _post(self, req: ValidatorRequest) -> Verdict:
        url = f"{self.base_url}/validate/{self.kind.value.lower()}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=req.model_dump(mode="json"), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=req.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            raise TransientError(f"{self.kind.value} transport error: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientError(f"{self.kind.value} returned {resp.status_code}")
        resp.raise_for_status()
        return Verdict.model_validate(resp.json())

    async def evaluate(self, req: ValidatorRequest) -> Verdict:
        try:
            return await call_with_retries(
                lambda: self._post(req),
                attempts=self.attempts,
                base_ms=settings.retry_base_delay_ms,
                cap_ms=settings.retry_max_delay_ms,
                dependency=self.kind.value.lower(),
            )
        except (TransientError, httpx.HTTPStatusError) as exc:
            logger.warning(
                "validator_unavailable kind=%s transaction_id=%s error=%s",
                self.kind.value,
                req.transaction_id,
                exc,
            )
            return _verdict(req, self.kind, VerdictDecision.ERROR, f"unavailable: {exc}")


class LedgerReservationAdapter(ValidatorAdapter):
    """LEDGER validator: approval means funds were reserved."""

    kind = ValidatorKind.LEDGER

    def __init__(self, ledger, expiry_ms: int | None = None, attempts: int | None = None) -> None:
        self.ledger = ledger
        self.expiry_ms = expiry_ms or settings.reservation_expiry_ms
        self.attempts = attempts or settings.validator_call_attempts

    async def evaluate(self, req: ValidatorRequest) -> Verdict:
        try:
            reservation = await call_with_retries(
                lambda: self.ledger.reserve(
                    transaction_id=req.transaction_id,
                    source_account=req.source_account,
                    dest_account=req.dest_account,
                    amount=req.amount,
                    currency=req.currency,
                    expiry_ms=self.expiry_ms,
                ),
                attempts=self.attempts,
                base_ms=settings.retry_base_delay_ms,
                cap_ms=settings.retry_max_delay_ms,
                dependency="ledger_reserve",
            )
        except InsufficientFunds as exc:
            return _verdict(req, self.kind, VerdictDecision.DECLINE, exc.code)
        except GatherPayError as exc:
            logger.warning("ledger_reserve_failed transaction_id=%s error=%s", req.transaction_id, exc)
            return _verdict(req, self.kind, VerdictDecision.ERROR, exc.code)
        if reservation.get("status") == "RELEASED":
            return _verdict(req, self.kind, VerdictDecision.DECLINE, "RESERVATION_RELEASED")
        return _verdict(
            req,
            self.kind,
            VerdictDecision.APPROVE,
            "reserved",
            reservation_id=reservation["reservation_id"],
        )


class HttpLedgerClient:
    """Narrow reserve/commit/release client for the ledger's HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_ms: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ledger_url).rstrip("/")
        self.timeout = (timeout_ms or settings.validator_timeout_ms) / 1000
        self._client = client

    async def _call(self, path: str, body: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body or {}, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, json=body or {})
        except httpx.HTTPError as exc:
            raise LedgerUnavailable(f"ledger transport error: {exc}") from exc
        if resp.status_code >= 500:
            raise LedgerUnavailable(f"ledger returned {resp.status_code}")
        if resp.status_code >= 400:
            detail = resp.json().get("detail") or {}
            if not isinstance(detail, dict):
                detail = {"message": str(detail)}
            error_cls = LEDGER_ERRORS_BY_CODE.get(detail.get("code", ""), LedgerError)
            raise error_cls(detail.get("message", f"ledger returned {resp.status_code}"), detail.get("details"))
        return resp.json()

    async def reserve(
        self,
        transaction_id: str,
        source_account: str,
        amount: int,
        dest_account: str,
        currency: str,
        expiry_ms: int,
    ) -> dict:
        return await self._call(
            "/reservations",
            {
                "transaction_id": transaction_id,
                "source_account": source_account,
                "dest_account": dest_account,
                "amount": amount,
                "currency": currency,
                "expiry_ms": expiry_ms,
            },
        )

    async def commit(self, reservation_id: str, fee: int = 0) -> dict:
        return await self._call(f"/reservations/{reservation_id}/commit", {"fee": fee})

    async def release(self, reservation_id: str) -> dict:
        return await self._call(f"/reservations/{reservation_id}/release")
