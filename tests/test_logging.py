"""Tests for logging setup and the JSON formatter."""

from __future__ import annotations

import json
import logging
import sys

from signal_gateway.core.logging import JSONFormatter, setup_logging


def _record(msg: str = "Breaker for %s OPENED", *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("signal_gateway.gateway", logging.WARNING, __file__, 1, msg, args or ("m",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_base_fields(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert data["level"] == "WARNING"
        assert data["logger"] == "signal_gateway.gateway"
        assert data["message"] == "Breaker for m OPENED"
        assert "timestamp" in data
        assert "model" not in data

    def test_context_fields_lifted(self):
        record = _record(request_id="abc123", model="model/primary", caller="203.0.113.7", unrelated="x")
        data = json.loads(JSONFormatter().format(record))
        assert data["request_id"] == "abc123"
        assert data["model"] == "model/primary"
        assert data["caller"] == "203.0.113.7"
        assert "unrelated" not in data

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), None)
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestSetupLogging:
    def test_single_handler_with_json(self):
        setup_logging(level="debug", json_output=True)
        root = logging.getLogger()
        try:
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            setup_logging(level="INFO", json_output=False)

    def test_text_format(self):
        setup_logging(json_output=False)
        assert not isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)
