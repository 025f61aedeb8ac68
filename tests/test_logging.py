"""Tests for structured logging configuration."""

import json
import logging
import sys

from studygate.app.core.config import settings
from studygate.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
)


def make_record(msg="Test message", **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="studygate.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "studygate.test"
        assert data["message"] == "Test message"
        assert data["source"] == {"file": "test.py", "line": 1, "function": None}
        assert "timestamp" in data

    def test_context_fields_are_top_level(self):
        record = make_record(
            request_id="req-1", user_id="u-1", rate_limit_key="chat:u-1", provider="mock"
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-1"
        assert data["user_id"] == "u-1"
        assert data["rate_limit_key"] == "chat:u-1"
        assert data["provider"] == "mock"
        assert "extra" not in data

    def test_other_fields_go_to_extra(self):
        data = json.loads(JSONFormatter().format(make_record(window_store="redis")))

        assert data["extra"] == {"window_store": "redis"}

    def test_exception_is_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert any("ValueError: boom" in line for line in data["exception"])


class TestContextFilter:
    def test_adds_missing_defaults(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        assert record.request_id is None
        assert record.rate_limit_key is None

    def test_keeps_existing_values(self):
        record = make_record(request_id="req-9")

        ContextFilter().filter(record)

        assert record.request_id == "req-9"


class TestLoggingConfig:
    def test_text_format(self, monkeypatch):
        monkeypatch.setattr(settings, "log_format", "text")

        config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["studygate"]["propagate"] is False

    def test_json_format(self, monkeypatch):
        monkeypatch.setattr(settings, "log_format", "json")
        monkeypatch.setattr(settings, "log_level", "debug")

        config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"].endswith("JSONFormatter")
        assert config["loggers"]["studygate"]["level"] == "DEBUG"

    def test_structured_format_includes_context(self, monkeypatch):
        monkeypatch.setattr(settings, "log_format", "structured")

        config = get_logging_config()

        assert "rate_limit_key" in config["formatters"]["structured"]["format"]


def test_get_log_context_drops_none():
    assert get_log_context(request_id="r", user_id=None, path="/x") == {
        "request_id": "r",
        "path": "/x",
    }


def test_get_logger_name():
    assert get_logger("studygate.x").name == "studygate.x"
