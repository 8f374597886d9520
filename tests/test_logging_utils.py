"""Tests for the :mod:`logging_utils` helpers."""

from __future__ import annotations

import io
import json
import logging
from datetime import date

import pytest

from logging_utils import PLAIN_FORMAT, JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def _clean_root_logger() -> None:
    root = logging.getLogger()
    root.handlers.clear()
    if hasattr(root, "_tradescore_configured"):
        delattr(root, "_tradescore_configured")
    yield
    root.handlers.clear()
    if hasattr(root, "_tradescore_configured"):
        delattr(root, "_tradescore_configured")


def _stream_handler() -> logging.StreamHandler:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler):
            return handler
    raise AssertionError("stream handler was not configured")


def test_setup_logging_uses_json_formatter_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = io.StringIO()
    monkeypatch.delenv("TRADESCORE_LOG_FORMAT", raising=False)
    monkeypatch.setenv("TRADESCORE_JSON_LOGS", "1")

    logger = setup_logging("tradescore.tests")
    handler = _stream_handler()
    handler.setStream(stream)

    logger.info("Registered model", extra={"version": "v1.0.0", "auc": 71.2})
    handler.flush()

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "Registered model"
    assert payload["version"] == "v1.0.0"
    assert payload["auc"] == 71.2
    assert payload["logger"] == "tradescore.tests"
    assert payload["level"] == "INFO"


def test_setup_logging_supports_plain_formatter(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = io.StringIO()
    monkeypatch.delenv("TRADESCORE_JSON_LOGS", raising=False)
    monkeypatch.setenv("TRADESCORE_LOG_FORMAT", "plain")

    logger = setup_logging("tradescore.tests")
    handler = _stream_handler()
    handler.setStream(stream)

    logger.warning("plain text entry")
    handler.flush()

    log_line = stream.getvalue()
    assert "plain text entry" in log_line
    with pytest.raises(json.JSONDecodeError):
        json.loads(log_line)


def test_log_level_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRADESCORE_LOG_LEVEL", "WARNING")
    logger = setup_logging("tradescore.tests.level")
    assert logger.level == logging.WARNING


def test_repeated_setup_keeps_single_handler() -> None:
    setup_logging("tradescore.tests")
    setup_logging("tradescore.tests")
    handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)]
    assert len(handlers) == 1


def test_json_formatter_coerces_numpy_values() -> None:
    np = pytest.importorskip("numpy")
    record = logging.LogRecord("tradescore.x", logging.INFO, __file__, 1, "fold done", None, None)
    record.auc = np.float64(0.75)
    record.folds = (1, 2)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["auc"] == 0.75
    assert payload["folds"] == [1, 2]


def test_plain_format_ignores_format_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRADESCORE_LOG_FORMAT", "text")
    monkeypatch.setenv("TRADESCORE_LOG_FMT", "%(message)s")
    setup_logging("tradescore.tests")
    formatter = _stream_handler().formatter
    assert formatter._fmt == PLAIN_FORMAT


def test_json_logs_flag_can_disable_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRADESCORE_LOG_FORMAT", raising=False)
    monkeypatch.setenv("TRADESCORE_JSON_LOGS", "off")
    setup_logging("tradescore.tests")
    assert not isinstance(_stream_handler().formatter, JsonFormatter)


def test_unknown_level_name_keeps_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRADESCORE_LOG_LEVEL", "chatty")
    logger = setup_logging("tradescore.tests.level", level=logging.ERROR)
    assert logger.level == logging.ERROR


def test_json_formatter_dates_and_trace_ids() -> None:
    record = logging.LogRecord("tradescore.pit", logging.WARNING, __file__, 1, "late", None, None)
    record.as_of = date(2024, 2, 1)
    record.otelTraceID = "abc"
    record.otelSpanID = "def"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["as_of"] == "2024-02-01"
    assert payload["trace_id"] == "abc"
    assert payload["span_id"] == "def"
    assert "otelTraceID" not in payload
