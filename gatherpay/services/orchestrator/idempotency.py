"""Idempotency gate: one logical transaction per client idempotency key.

Admission is insert-if-absent on the `idempotency_records` primary key, so two
concurrent submissions of one key can never both come back NEW, even across
processes. The gate fails closed: if the store cannot be read or written, the
submission is rejected instead of risking a second debit.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gatherpay.common.db import ensure_utc, utcnow
from gatherpay.common.errors import IdempotencyConflict, IdempotencyStoreUnavailable
from gatherpay.common.logging import logger
from gatherpay.services.orchestrator.models import IdempotencyRecord
from gatherpay.services.orchestrator.schemas import AdmitStatus, PaymentRequest

PENDING = "PENDING"
COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class AdmitResult:
    status: AdmitStatus
    transaction_id: str
    outcome: dict[str, Any] | None = None


def request_fingerprint(request: PaymentRequest) -> str:
    """Hash of the business fields a retry must repeat exactly."""

    body = {
        "source_account": request.source_account,
        "dest_account": request.dest_account,
        "amount": request.amount,
        "currency": request.currency,
    }
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode("utf-8")).hexdigest()


class IdempotencyGate:
    def __init__(self, ttl_seconds: int) -> None:
        self.ttl_seconds = ttl_seconds

    def admit(self, db, request: PaymentRequest) -> AdmitResult:
        """Create the PENDING record for a new key, or report the duplicate.

        Runs inside the caller's session so the orchestration row can be added
        in the same transaction; the caller commits on NEW.
        """

        fingerprint = request_fingerprint(request)
        try:
            existing = self._live_record(db, request.idempotency_key)
            if existing is not None:
                return self._duplicate(existing, fingerprint)

            db.add(
                IdempotencyRecord(
                    idempotency_key=request.idempotency_key,
                    transaction_id=request.transaction_id,
                    request_fingerprint=fingerprint,
                    status=PENDING,
                )
            )
            try:
                db.flush()
            except IntegrityError:
                # Lost the insert race: someone else admitted this key first.
                db.rollback()
                winner = db.get(IdempotencyRecord, request.idempotency_key)
                if winner is None:
                    raise
                return self._duplicate(winner, fingerprint)
        except (IdempotencyConflict, IdempotencyStoreUnavailable):
            raise
        except SQLAlchemyError as exc:
            logger.error("idempotency_store_unavailable key=%s error=%s", request.idempotency_key, exc)
            raise IdempotencyStoreUnavailable("idempotency store unavailable") from exc
        return AdmitResult(AdmitStatus.NEW, request.transaction_id)

    def _live_record(self, db, key: str) -> IdempotencyRecord | None:
        record = db.get(IdempotencyRecord, key)
        if record is None:
            return None
        expires_at = ensure_utc(record.expires_at)
        if record.status == COMPLETED and expires_at is not None and expires_at <= utcnow():
            # Past the duplicate-detection window; the key may start a new transaction.
            db.delete(record)
            db.flush()
            return None
        return record

    def _duplicate(self, record: IdempotencyRecord, fingerprint: str) -> AdmitResult:
        if record.request_fingerprint != fingerprint:
            raise IdempotencyConflict(
                "idempotency key reused with a different request",
                {"transaction_id": record.transaction_id},
            )
        if record.status == COMPLETED:
            return AdmitResult(AdmitStatus.DUPLICATE_COMPLETED, record.transaction_id, record.cached_outcome)
        return AdmitResult(AdmitStatus.DUPLICATE_IN_FLIGHT, record.transaction_id)

    def complete(self, db, key: str, outcome: dict[str, Any]) -> None:
        """Flip the record to COMPLETED; called in the TransactionRecord's transaction."""

        record = db.get(IdempotencyRecord, key)
        if record is None:
            raise IdempotencyStoreUnavailable(f"idempotency record {key} vanished before completion")
        record.status = COMPLETED
        record.cached_outcome = outcome
        record.expires_at = utcnow() + timedelta(seconds=self.ttl_seconds)

    def lookup(self, db, key: str) -> IdempotencyRecord | None:
        return db.execute(select(IdempotencyRecord).where(IdempotencyRecord.idempotency_key == key)).scalar_one_or_none()

    def purge_expired(self, db) -> int:
        result = db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.status == COMPLETED,
                IdempotencyRecord.expires_at <= utcnow(),
            )
        )
        return result.rowcount or 0
