"""Kafka topic names shared by the orchestrator and the validator services.

Fan-out messages are keyed by source account so that every request from one
account lands on the same partition and keeps its submission order. Only FRAUD
and LIMIT have request topics; the LEDGER reservation is always a direct call.
"""

TOPIC_PAYMENTS_SUBMITTED = "payments.submitted"

TOPIC_FRAUD_REQUESTED = "validation.fraud.requested"
TOPIC_LIMIT_REQUESTED = "validation.limit.requested"

# Every validator answers on one topic; the verdict names its kind.
TOPIC_VERDICTS = "validation.verdicts"

TOPIC_CONFIRMED = "payments.confirmed"
TOPIC_MANUAL_REVIEW = "payments.manual_review"

VALIDATION_TOPICS = {
    "FRAUD": TOPIC_FRAUD_REQUESTED,
    "LIMIT": TOPIC_LIMIT_REQUESTED,
}
