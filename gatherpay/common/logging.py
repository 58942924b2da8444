"""Structured JSON logging that ties every line to its payment.

Records carry the service name plus whichever trace, event and transaction ids
are bound in the current context, so one transaction can be followed through
dispatch, verdicts, decision and commit with a single filter.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from gatherpay.common.config import settings

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
transaction_id_ctx: ContextVar[str] = ContextVar("transaction_id", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "transaction_id": transaction_id_ctx,
}

LOG_FORMAT = " ".join(
    ["%(asctime)s", "%(levelname)s", "%(name)s", "%(service_name)s"]
    + [f"%({field})s" for field in CONTEXT_FIELDS]
    + ["%(message)s"]
)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in CONTEXT_FIELDS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def bound(**ids: str):
    """Bind correlation ids (`trace_id`, `event_id`, `transaction_id`) for a block."""

    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in ids.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter(LOG_FORMAT, rename_fields={"asctime": "timestamp", "levelname": "level"}))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)


logger = logging.getLogger("gatherpay")
