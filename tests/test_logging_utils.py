from __future__ import annotations

import json
import logging
import sys

from trackrecord.logging_context import with_event_context, with_logging_context
from trackrecord.logging_utils import JsonFormatter, setup_logging


def _record(msg: str, *, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="trackrecord.test",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(
            _record("track_record_hook_failed", level=logging.ERROR, exc_info=sys.exc_info())
        )

    payload = json.loads(rendered)
    assert payload["message"] == "track_record_hook_failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_unknown_level_falls_back_to_info() -> None:
    setup_logging("CHATTY")

    assert logging.getLogger().level == logging.INFO


def test_setup_logging_quiets_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_debug_enables_http_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("httpcore").level == logging.DEBUG


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL


def test_json_formatter_includes_correlation_fields_even_when_unset() -> None:
    payload = json.loads(JsonFormatter().format(_record("hello")))

    for field in ("run_id", "instance_id", "seq_no", "event_type", "ticket"):
        assert field in payload
        assert payload[field] is None


def test_json_formatter_reads_active_context() -> None:
    formatter = JsonFormatter()

    with with_logging_context(run_id="run-1", instance_id="inst-1"):
        with with_event_context("TRADE_OPEN", 7):
            inside = json.loads(formatter.format(_record("track_record_event_committed")))
    outside = json.loads(formatter.format(_record("after")))

    assert inside["run_id"] == "run-1"
    assert inside["instance_id"] == "inst-1"
    assert inside["event_type"] == "TRADE_OPEN"
    assert inside["seq_no"] == "7"
    assert outside["run_id"] is None
    assert outside["seq_no"] is None


def test_json_formatter_merges_extra_mapping() -> None:
    record = _record("track_record_event_dropped", level=logging.WARNING)
    record.extra = {"head_seq_no": 4, "reason": "rejected"}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["head_seq_no"] == 4
    assert payload["reason"] == "rejected"


def test_json_formatter_info_redacts_token_in_output() -> None:
    payload = JsonFormatter().format(_record("token=abcd1234SECRETzz"))

    assert "abcd1234SECRETzz" not in payload


def test_json_formatter_exception_redacts_traceback_message() -> None:
    formatter = JsonFormatter()
    try:
        raise RuntimeError("X-EA-Key: TOPSECRET123456")
    except RuntimeError:
        record = _record("failure", level=logging.ERROR, exc_info=sys.exc_info())
    rendered = formatter.format(record)

    assert "TOPSECRET123456" not in rendered


def test_json_formatter_redacts_sensitive_extra_fields() -> None:
    record = _record("ok")
    record.extra = {"api_key": "ea-key-SUPERSECRET", "url": "https://tr.example.test"}

    rendered = JsonFormatter().format(record)

    assert "SUPERSECRET" not in rendered
    assert "https://tr.example.test" in rendered
