from __future__ import annotations

import json
import logging
import sys

from scenariomarket.logging_context import (
    get_logging_context,
    with_logging_context,
    with_operation_context,
)
from scenariomarket.logging_utils import JsonFormatter, setup_logging


def _record(msg: str, **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="scenariomarket.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            name="scenariomarket.test",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="command_failed",
            args=(),
            exc_info=sys.exc_info(),
        )
        rendered = formatter.format(record)

    payload = json.loads(rendered)
    assert payload["message"] == "command_failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_extra_and_operation_context() -> None:
    formatter = JsonFormatter()

    with with_operation_context("steal", scenario_id="s1", user_id="bob"):
        rendered = formatter.format(_record("steal_completed", extra={"price_paid": 11}))

    payload = json.loads(rendered)
    assert payload["price_paid"] == 11
    assert payload["operation"] == "steal"
    assert payload["scenario_id"] == "s1"
    assert payload["user_id"] == "bob"


def test_context_is_cleared_after_block() -> None:
    formatter = JsonFormatter()
    with with_operation_context("resolve", scenario_id="s9"):
        pass

    payload = json.loads(formatter.format(_record("idle")))
    assert payload["operation"] is None
    assert payload["scenario_id"] is None


def test_json_formatter_redacts_tokens() -> None:
    formatter = JsonFormatter()

    rendered = formatter.format(
        _record(
            "webhook_delivery_failed",
            extra={"authorization": "Bearer abcdefghijkl", "body": "token=abcdefghijkl"},
        )
    )

    assert "abcdefghijkl" not in rendered


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_defaults_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.INFO
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL


def test_nested_context_keeps_outer_fields() -> None:
    with with_logging_context(request_id="r1", operation="steal"):
        with with_operation_context("steal", scenario_id="s1"):
            inner = get_logging_context()
        outer = get_logging_context()

    assert inner == {"request_id": "r1", "operation": "steal", "scenario_id": "s1"}
    assert outer == {"request_id": "r1", "operation": "steal"}
    assert get_logging_context() == {}
