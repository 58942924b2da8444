"""Correlation ids on log records and startup config redaction."""

import logging

from gatherpay.common.logging import ContextFilter, bound, transaction_id_ctx
from gatherpay.common.startup import log_startup_config


def make_record():
    return logging.LogRecord("gatherpay", logging.INFO, __file__, 1, "hello", None, None)


def test_bound_ids_reach_the_record_and_are_restored():
    with bound(transaction_id="tx-1", trace_id="trace-1"):
        with bound(transaction_id="tx-2"):
            inner = make_record()
            ContextFilter().filter(inner)
        outer = make_record()
        ContextFilter().filter(outer)

    assert (inner.transaction_id, inner.trace_id) == ("tx-2", "trace-1")
    assert (outer.transaction_id, outer.trace_id, outer.event_id) == ("tx-1", "trace-1", "")
    assert transaction_id_ctx.get() == ""


def test_startup_config_hides_secrets(config):
    cfg = config.model_copy(
        update={"database_dsn": "postgresql+psycopg://pay:hunter2@db:5432/pay", "ops_api_key": "top-secret"}
    )

    rendered = log_startup_config(cfg, ["database_dsn", "ops_api_key", "aggregation_deadline_ms", "missing"])

    assert rendered["service"] == cfg.service_name
    assert rendered["database_dsn"] == "postgresql+psycopg://pay:***@db:5432/pay"
    assert rendered["ops_api_key"] == "<redacted>"
    assert rendered["aggregation_deadline_ms"] == "1000"
    assert rendered["missing"] == "<unset>"
