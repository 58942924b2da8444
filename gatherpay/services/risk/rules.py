"""Pure FRAUD and LIMIT rules; the service supplies the counters."""

from gatherpay.services.orchestrator.schemas import VerdictDecision


def fraud_decision(amount: int, transactions_this_hour: int, velocity_limit: int, decline_amount: int) -> tuple[VerdictDecision, str]:
    """Decline single large payments and bursts from one account."""

    if amount >= decline_amount:
        return VerdictDecision.DECLINE, "high_amount"
    if transactions_this_hour > velocity_limit:
        return VerdictDecision.DECLINE, "velocity_exceeded"
    return VerdictDecision.APPROVE, "rule_passed"


def limit_decision(amount: int, spent_today: int, daily_limit: int) -> tuple[VerdictDecision, str]:
    if spent_today + amount > daily_limit:
        return VerdictDecision.DECLINE, "daily_limit_exceeded"
    return VerdictDecision.APPROVE, "within_limit"
