"""Ledger service API + lifecycle.

Exposes the narrow reserve/commit/release contract used by the orchestrator,
sweeps expired reservations in the background, and keeps the reconciliation
endpoints for integrity checks.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import case, func, select

from gatherpay.common.config import settings
from gatherpay.common.db import build_session_factory
from gatherpay.common.errors import (
    InsufficientFunds,
    LedgerError,
    ReservationExpired,
    ReservationNotFound,
)
from gatherpay.common.logging import configure_logging
from gatherpay.common.metrics import metrics_response
from gatherpay.common.startup import log_startup_config
from gatherpay.common.tracing import instrument_app, setup_tracing
from gatherpay.services.ledger.models import LedgerEntry
from gatherpay.services.ledger.service import LedgerService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings, ["database_dsn", "reservation_expiry_ms"])
SessionLocal = build_session_factory(settings.database_dsn)
service = LedgerService(SessionLocal)


class ReserveRequest(BaseModel):
    transaction_id: str = Field(min_length=1)
    source_account: str = Field(min_length=1)
    dest_account: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    expiry_ms: int | None = Field(default=None, gt=0)


class CommitRequest(BaseModel):
    fee: int = Field(default=0, ge=0)


class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1)
    balance: int = Field(default=0, ge=0)


def _ledger_http_error(exc: LedgerError) -> HTTPException:
    """Map ledger errors to HTTP statuses; the body carries the stable code."""

    if isinstance(exc, ReservationNotFound):
        status = 404
    elif isinstance(exc, ReservationExpired):
        status = 410
    elif isinstance(exc, InsufficientFunds):
        status = 422
    else:
        status = 409
    return HTTPException(status_code=status, detail=exc.to_dict())


def enforce_api_key(x_api_key: str | None) -> None:
    if x_api_key != settings.ops_api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Ensure system accounts exist and run the expiry sweeper."""

    service.ensure_accounts()
    expiry_task = asyncio.create_task(service.expiry_worker())
    yield
    expiry_task.cancel()


app = FastAPI(title="GatherPay Ledger Service", lifespan=lifespan)
instrument_app(app)


@app.post("/reservations")
async def reserve(req: ReserveRequest):
    try:
        return await service.reserve(**req.model_dump())
    except LedgerError as exc:
        raise _ledger_http_error(exc) from exc


@app.post("/reservations/{reservation_id}/commit")
async def commit(reservation_id: str, req: CommitRequest | None = None):
    try:
        return await service.commit(reservation_id, fee=(req.fee if req else 0))
    except LedgerError as exc:
        raise _ledger_http_error(exc) from exc


@app.post("/reservations/{reservation_id}/release")
async def release(reservation_id: str):
    try:
        return await service.release(reservation_id)
    except LedgerError as exc:
        raise _ledger_http_error(exc) from exc


@app.post("/accounts", status_code=201)
def open_account(req: OpenAccountRequest, x_api_key: str | None = Header(default=None)):
    """Ops endpoint to seed customer accounts."""

    enforce_api_key(x_api_key)
    account = service.open_account(req.account_id, req.balance)
    return {"account_id": account.account_id, "balance": account.balance}


@app.get("/accounts/{account_id}")
def get_account(account_id: str):
    with SessionLocal() as db:
        available = service.available_balance(db, account_id)
    account = service.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="account not found")
    return {"account_id": account.account_id, "balance": account.balance, "available": available}


@app.get("/reconciliation/{transaction_id}")
def reconciliation(transaction_id: str):
    """Return debit/credit details for one transaction id."""

    with SessionLocal() as db:
        entries = db.execute(
            select(LedgerEntry).where(LedgerEntry.transaction_id == transaction_id)
        ).scalars().all()
        debits = sum(e.amount for e in entries if e.direction == "DEBIT")
        credits = sum(e.amount for e in entries if e.direction == "CREDIT")
        return {
            "transaction_id": transaction_id,
            "balanced": debits == credits,
            "debits": debits,
            "credits": credits,
            "entries": [
                {"entry_id": e.entry_id, "account_id": e.account_id, "direction": e.direction, "amount": e.amount}
                for e in entries
            ],
        }


@app.get("/reconciliation")
def reconciliation_report(limit: int = 1000):
    """Return global reconciliation summary over posted transactions."""

    with SessionLocal() as db:
        rows = db.execute(
            select(
                LedgerEntry.transaction_id,
                func.sum(case((LedgerEntry.direction == "DEBIT", LedgerEntry.amount), else_=0)).label("debits"),
                func.sum(case((LedgerEntry.direction == "CREDIT", LedgerEntry.amount), else_=0)).label("credits"),
                func.count(LedgerEntry.entry_id).label("entry_count"),
            )
            .group_by(LedgerEntry.transaction_id)
            .order_by(LedgerEntry.transaction_id)
            .limit(limit)
        ).all()
        imbalanced = [
            {
                "transaction_id": row.transaction_id,
                "debits": int(row.debits or 0),
                "credits": int(row.credits or 0),
                "entry_count": int(row.entry_count or 0),
            }
            for row in rows
            if int(row.debits or 0) != int(row.credits or 0)
        ]
        return {
            "transactions_checked": len(rows),
            "imbalanced_count": len(imbalanced),
            "imbalanced_transactions": imbalanced,
        }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
