"""Deterministic accept/reject rule over the three validator verdicts.

ERROR counts as DECLINE and a verdict missing at the deadline counts as
DECLINE. The rule is total: every combination maps to exactly one outcome, and
the reason names the first failing validator in FRAUD, LIMIT, LEDGER order.
"""

from collections.abc import Mapping
from dataclasses import dataclass

from gatherpay.services.orchestrator.schemas import VALIDATOR_KINDS, ValidatorKind, VerdictDecision

PROCEED = "PROCEED"
REJECTED = "REJECTED"


@dataclass(frozen=True)
class DecisionResult:
    outcome: str
    reason: str

    @property
    def proceed(self) -> bool:
        return self.outcome == PROCEED


def decide(verdicts: Mapping[ValidatorKind, VerdictDecision | None]) -> DecisionResult:
    for kind in VALIDATOR_KINDS:
        decision = verdicts.get(kind)
        if decision is None:
            return DecisionResult(REJECTED, f"{kind.value.lower()}_missing")
        if decision is VerdictDecision.DECLINE:
            return DecisionResult(REJECTED, f"{kind.value.lower()}_declined")
        if decision is VerdictDecision.ERROR:
            return DecisionResult(REJECTED, f"{kind.value.lower()}_error")
    return DecisionResult(PROCEED, "all_approved")
