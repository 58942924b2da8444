"""Request, verdict and event schemas for the orchestrator and its validators."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatherpay.common.db import utcnow


class ValidatorKind(str, Enum):
    FRAUD = "FRAUD"
    LIMIT = "LIMIT"
    LEDGER = "LEDGER"


VALIDATOR_KINDS = (ValidatorKind.FRAUD, ValidatorKind.LIMIT, ValidatorKind.LEDGER)


class VerdictDecision(str, Enum):
    APPROVE = "APPROVE"
    DECLINE = "DECLINE"
    ERROR = "ERROR"


class AdmitStatus(str, Enum):
    NEW = "NEW"
    DUPLICATE_IN_FLIGHT = "DUPLICATE_IN_FLIGHT"
    DUPLICATE_COMPLETED = "DUPLICATE_COMPLETED"


class FinalStatus(str, Enum):
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class FailureKind(str, Enum):
    TRANSIENT = "TRANSIENT"
    STRUCTURAL = "STRUCTURAL"


class DeadLetterStage(str, Enum):
    INGRESS = "INGRESS"
    DISPATCH = "DISPATCH"
    COMMIT = "COMMIT"
    RELEASE = "RELEASE"


class DeadLetterStatus(str, Enum):
    PENDING_RETRY = "PENDING_RETRY"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    RESOLVED = "RESOLVED"


class PaymentCreateRequest(BaseModel):
    """Payment submission accepted from the gateway."""

    idempotency_key: str = Field(min_length=1, max_length=255)
    source_account: str = Field(min_length=1)
    dest_account: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("currency must be a three-letter code")
        return value.upper()

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "PaymentCreateRequest":
        if self.source_account == self.dest_account:
            raise ValueError("source_account and dest_account must differ")
        return self


class PaymentRequest(PaymentCreateRequest):
    """Immutable request as admitted; consumed, never mutated, downstream."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(default_factory=lambda: str(uuid4()))
    submitted_at: datetime = Field(default_factory=utcnow)


class ValidatorRequest(BaseModel):
    """Fan-out envelope body sent to each validator."""

    transaction_id: str
    attempt_nonce: str
    source_account: str
    dest_account: str
    amount: int
    currency: str


class Verdict(BaseModel):
    """One validator's answer for one attempt."""

    verdict_id: str = Field(default_factory=lambda: str(uuid4()))
    transaction_id: str
    attempt_nonce: str
    validator_kind: ValidatorKind
    decision: VerdictDecision
    detail: str = ""
    reservation_id: str | None = None
    received_at: datetime = Field(default_factory=utcnow)


class SubmitResponse(BaseModel):
    transaction_id: str
    status: str
    reason: str | None = None


class ConfirmationEvent(BaseModel):
    """Terminal outcome handed to the notification layer."""

    transaction_id: str
    final_status: FinalStatus
    reason: str
    source_account: str
    dest_account: str
    amount: int
    currency: str
    fee: int
    completed_at: datetime


class DeadLetterView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    stage: DeadLetterStage
    original_request: dict[str, Any]
    failure_reason: str
    failure_kind: FailureKind
    attempt: int
    next_retry_at: datetime | None
    status: DeadLetterStatus
    resolved_by: str | None = None


class ResolveRequest(BaseModel):
    """Operator resolution of a manual-review envelope."""

    final_status: FinalStatus
    resolved_by: str = Field(min_length=1)

    @field_validator("final_status")
    @classmethod
    def _no_manual_completion(cls, value: FinalStatus) -> FinalStatus:
        if value is FinalStatus.COMPLETED:
            raise ValueError("a transaction can only complete through a ledger commit")
        return value


class AuditEventView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
