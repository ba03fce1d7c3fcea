"""
Tests for settings and logging configuration.
"""

import json
import logging

import pytest

from persona_chat.config import Settings
from persona_chat.core.logging_config import (
    ColoredFormatter,
    JSONFormatter,
    SessionLoggerAdapter,
    mask_sensitive,
    setup_logging,
    truncate_for_log,
)


def make_record(message="hello", level=logging.INFO, **extra):
    record = logging.LogRecord("persona_chat.test", level, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSettings:

    def test_defaults(self):
        config = Settings()
        assert config.virtualization_threshold == 50
        assert config.memory_max_sessions == 10
        assert config.memory_max_messages_per_session == 10
        assert config.memory_cleanup_interval_seconds == 300

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("API_BASE_URL", "http://chat.internal/api")
        monkeypatch.setenv("STREAM_MAX_RETRIES", "8")

        config = Settings()

        assert config.api_base_url == "http://chat.internal/api"
        assert config.stream_max_retries == 8


class TestFormatters:

    def test_json_formatter_includes_extra_fields(self):
        record = make_record(extra_fields={"session_id": "s1", "attempt": 2})

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["session_id"] == "s1"
        assert data["attempt"] == 2

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            import sys
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad" in data["exception"]

    def test_colored_formatter_leaves_record_untouched(self):
        record = make_record(level=logging.WARNING)

        output = ColoredFormatter("%(levelname)s %(message)s").format(record)

        assert "\033[33m" in output
        assert record.levelname == "WARNING"

    def test_colored_formatter_tags_session(self):
        record = make_record(extra_fields={"session_id": "s1"})

        output = ColoredFormatter("%(message)s").format(record)

        assert output == "[s1] hello"

    def test_session_adapter_merges_context(self):
        adapter = SessionLoggerAdapter(logging.getLogger("persona_chat.test"))
        adapter.bind("s1")

        _, kwargs = adapter.process("msg", {"extra": {"extra_fields": {"message_id": "m1"}}})

        assert adapter.session_id == "s1"
        assert kwargs["extra"]["extra_fields"] == {"session_id": "s1", "message_id": "m1"}

    def test_unbound_adapter_adds_nothing(self):
        adapter = SessionLoggerAdapter(logging.getLogger("persona_chat.test"))

        _, kwargs = adapter.process("msg", {})

        assert kwargs["extra"]["extra_fields"] == {}


class TestSanitizers:

    def test_mask_sensitive(self):
        data = {
            "Authorization": "Bearer abc",
            "nested": [{"api_key": "k", "name": "Ada"}],
            "content": "hi",
        }

        filtered = mask_sensitive(data)

        assert filtered["Authorization"] == "***FILTERED***"
        assert filtered["nested"][0] == {"api_key": "***FILTERED***", "name": "Ada"}
        assert filtered["content"] == "hi"

    def test_truncate_for_log(self):
        assert truncate_for_log("short", max_length=10) == "short"
        truncated = truncate_for_log("x" * 20, max_length=10)
        assert truncated.startswith("x" * 10)
        assert "total length: 20" in truncated


class TestSetupLogging:

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers = handlers
        root.setLevel(level)

    def test_console_only(self):
        setup_logging(Settings(log_level="debug", log_file_enabled=False))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ColoredFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "chat.log"
        setup_logging(Settings(
            log_console_enabled=False,
            log_file_enabled=True,
            log_file_path=str(log_file),
        ))

        logging.getLogger("persona_chat.test").info(
            "stream done", extra={"extra_fields": {"session_id": "s1"}}
        )
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        assert lines[0]["message"].startswith("Logging initialized")
        assert lines[-1]["session_id"] == "s1"
