"""Decision matrix over FRAUD, LIMIT and LEDGER verdicts."""

from itertools import product

import pytest

from gatherpay.services.orchestrator.decision import PROCEED, REJECTED, decide
from gatherpay.services.orchestrator.schemas import ValidatorKind, VerdictDecision

FRAUD, LIMIT, LEDGER = ValidatorKind.FRAUD, ValidatorKind.LIMIT, ValidatorKind.LEDGER
APPROVE, DECLINE, ERROR = VerdictDecision.APPROVE, VerdictDecision.DECLINE, VerdictDecision.ERROR


def expected_for(fraud, limit, ledger):
    for name, decision in (("fraud", fraud), ("limit", limit), ("ledger", ledger)):
        if decision is None:
            return REJECTED, f"{name}_missing"
        if decision is not APPROVE:
            return REJECTED, f"{name}_{'declined' if decision is DECLINE else 'error'}"
    return PROCEED, "all_approved"


@pytest.mark.parametrize("fraud,limit,ledger", list(product(VerdictDecision, repeat=3)))
def test_every_combination_has_one_outcome(fraud, limit, ledger):
    result = decide({FRAUD: fraud, LIMIT: limit, LEDGER: ledger})

    assert (result.outcome, result.reason) == expected_for(fraud, limit, ledger)
    assert result.proceed is (fraud is limit is ledger is APPROVE)


def test_only_all_approve_proceeds():
    outcomes = [decide({FRAUD: f, LIMIT: l, LEDGER: g}).outcome for f, l, g in product(VerdictDecision, repeat=3)]

    assert outcomes.count(PROCEED) == 1


@pytest.mark.parametrize("missing", [FRAUD, LIMIT, LEDGER])
def test_missing_verdict_counts_as_decline(missing):
    verdicts = {kind: APPROVE for kind in (FRAUD, LIMIT, LEDGER) if kind is not missing}

    result = decide(verdicts)

    assert result.outcome == REJECTED
    assert result.reason == f"{missing.value.lower()}_missing"


def test_reason_names_first_failing_validator():
    result = decide({FRAUD: APPROVE, LIMIT: ERROR, LEDGER: DECLINE})

    assert result.reason == "limit_error"


def test_decide_is_pure():
    verdicts = {FRAUD: APPROVE, LIMIT: DECLINE, LEDGER: APPROVE}

    assert decide(verdicts) == decide(dict(verdicts))
