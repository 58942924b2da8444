"""Error taxonomy shared by the orchestrator and its collaborators.

Transient errors are retried by the component that owns the call; structural
errors are never retried and go straight to manual review. Every error carries
a stable `code` that ends up in terminal outcomes and API responses.
"""

from typing import Any


class GatherPayError(Exception):
    """Base class for every domain error raised inside gatherpay."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientError(GatherPayError):
    """Timeouts and transport failures; worth another attempt."""

    code = "TRANSIENT_FAILURE"


class StructuralError(GatherPayError):
    """Malformed input or impossible state; retrying cannot help."""

    code = "STRUCTURAL_FAILURE"


class IdempotencyStoreUnavailable(GatherPayError):
    code = "IDEMPOTENCY_STORE_UNAVAILABLE"


class IdempotencyConflict(StructuralError):
    """Same idempotency key submitted with a different request body."""

    code = "IDEMPOTENCY_KEY_REUSED"


class InvalidTransition(ValueError):
    """Raised when a phase change is not allowed by the state machine."""


class ConcurrencyConflict(RuntimeError):
    """Another writer moved the orchestration first."""


class LedgerError(GatherPayError):
    code = "LEDGER_ERROR"


class LedgerUnavailable(LedgerError, TransientError):
    code = "LEDGER_UNAVAILABLE"


class InsufficientFunds(LedgerError):
    code = "INSUFFICIENT_FUNDS"


class ReservationNotFound(LedgerError, StructuralError):
    code = "RESERVATION_NOT_FOUND"


class ReservationExpired(LedgerError, StructuralError):
    code = "RESERVATION_EXPIRED"


class ReservationStateError(LedgerError, StructuralError):
    code = "RESERVATION_STATE"


LEDGER_ERRORS_BY_CODE: dict[str, type[LedgerError]] = {
    cls.code: cls
    for cls in (
        LedgerError,
        LedgerUnavailable,
        InsufficientFunds,
        ReservationNotFound,
        ReservationExpired,
        ReservationStateError,
    )
}


class DeadLetterNotFound(GatherPayError):
    code = "DEAD_LETTER_NOT_FOUND"


class DeadLetterResolved(GatherPayError):
    """Operator action on an envelope that is already resolved."""

    code = "DEAD_LETTER_RESOLVED"
