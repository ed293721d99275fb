"""
Unit tests for src/utils/logging

Covers JSON and console formatting, context binding, and environment-based
configuration.
"""

import json
import logging
import sys

import pytest

from src.utils.logging import (
    ConsoleFormatter,
    ContextLogger,
    JSONFormatter,
    configure_from_env,
    setup_logging,
    shutdown_logging,
)


def make_record(msg="Applied upsert", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="src.replication.processor",
        level=level,
        pathname="/app/src/replication/processor.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJSONFormatter:
    """Test JSONFormatter class"""

    def test_init_with_defaults(self):
        formatter = JSONFormatter()

        assert formatter.app_name == "pg-sync-worker"
        assert formatter.hostname is not None

    def test_format_basic_log_record(self):
        """Test formatting a basic log record"""
        # Arrange
        formatter = JSONFormatter(include_hostname=False)

        # Act
        data = json.loads(formatter.format(make_record()))

        # Assert
        assert data["level"] == "INFO"
        assert data["logger"] == "src.replication.processor"
        assert data["message"] == "Applied upsert"
        assert data["app"] == "pg-sync-worker"
        assert "hostname" not in data
        assert "context" not in data

    def test_table_and_operation_promoted(self):
        formatter = JSONFormatter()
        record = make_record(table_name="public:orders", operation="upsert", attempts=3)

        data = json.loads(formatter.format(record))

        assert data["table_name"] == "public:orders"
        assert data["operation"] == "upsert"
        assert data["context"] == {"attempts": 3}

    def test_exception_included(self):
        formatter = JSONFormatter()
        try:
            raise ConnectionError("target unavailable")
        except ConnectionError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(formatter.format(record))

        assert data["exception"]["type"] == "ConnectionError"
        assert data["exception"]["message"] == "target unavailable"
        assert data["exception"]["traceback"]

    def test_non_serializable_context(self):
        formatter = JSONFormatter()
        record = make_record(cursor=object())

        data = json.loads(formatter.format(record))

        assert "object" in data["context"]["cursor"]


class TestConsoleFormatter:
    """Test ConsoleFormatter class"""

    def test_plain_format(self):
        formatter = ConsoleFormatter(use_colors=False)

        output = formatter.format(make_record())

        assert "[INFO] src.replication.processor: Applied upsert" in output

    def test_context_appended(self):
        formatter = ConsoleFormatter(use_colors=False)

        output = formatter.format(make_record(table_name="public:orders"))

        assert output.endswith("[table_name=public:orders]")

    def test_levelname_restored_after_coloring(self):
        formatter = ConsoleFormatter(use_colors=True)
        formatter.use_colors = True
        record = make_record(level=logging.WARNING)

        output = formatter.format(record)

        assert "\033[33m" in output
        assert record.levelname == "WARNING"


class TestContextLogger:
    """Test ContextLogger class"""

    def test_bound_context_in_records(self, caplog):
        log = ContextLogger("test.context", table_name="public:orders")

        with caplog.at_level(logging.INFO, logger="test.context"):
            log.info("Reconciled rows", operation="reconcile", rows=42)

        record = caplog.records[0]
        assert record.table_name == "public:orders"
        assert record.operation == "reconcile"
        assert record.rows == 42

    def test_error_with_exc_info(self, caplog):
        log = ContextLogger("test.context")

        with caplog.at_level(logging.ERROR, logger="test.context"):
            try:
                raise ValueError("bad payload")
            except ValueError:
                log.error("Failed", exc_info=True)

        assert caplog.records[0].exc_info is not None


class TestSetupLogging:
    """Test setup_logging and configure_from_env"""

    def test_level_and_console_handler(self):
        setup_logging(level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ConsoleFormatter)

    def test_json_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "sync.log"

        setup_logging(level="INFO", log_file=str(log_file), console_output=False, json_format=True)
        logging.getLogger("test.file").info("written")
        shutdown_logging()

        line = log_file.read_text().strip()
        assert json.loads(line)["message"] == "written"

    def test_scheduler_logger_quietened(self):
        setup_logging(level="DEBUG")

        assert logging.getLogger("apscheduler").level == logging.WARNING

    def test_configure_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("LOG_JSON", "true")
        monkeypatch.delenv("LOG_FILE", raising=False)

        configure_from_env()

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_explicit_level_wins(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        configure_from_env("DEBUG")

        assert logging.getLogger().level == logging.DEBUG

    def test_shutdown_removes_handlers(self):
        setup_logging(level="INFO")

        shutdown_logging()

        assert logging.getLogger().handlers == []
