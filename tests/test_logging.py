"""Tests for logging utilities."""

import logging

import pytest

from clawfleet.logging import (
    TRACE,
    StructuredLogger,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
    log_performance,
    redact,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLevels:
    """Tests for level helpers."""

    def test_verbosity(self):
        assert get_level_from_verbosity(0) == logging.WARNING
        assert get_level_from_verbosity(1) == logging.INFO
        assert get_level_from_verbosity(2) == logging.DEBUG
        assert get_level_from_verbosity(3) == TRACE
        assert get_level_from_verbosity(7) == TRACE

    def test_level_names(self):
        assert get_level_from_name("TRACE") == TRACE
        assert get_level_from_name("info") == logging.INFO

    def test_invalid_level_name(self):
        with pytest.raises(ValueError):
            get_level_from_name("loud")


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_configure_level(self):
        configure_logging(level=logging.DEBUG)
        assert logging.root.level == logging.DEBUG

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "clawfleet.log"

        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.DEBUG)
        logging.getLogger("clawfleet.test").debug("written to file only")
        for handler in logging.root.handlers:
            handler.flush()

        assert logging.root.level == logging.DEBUG
        assert "written to file only" in log_file.read_text()


class TestRedact:
    """Tests for redact."""

    def test_literal_secret(self):
        assert redact("login hunter2 ok", ["hunter2"]) == "login *** ok"

    def test_short_or_missing_secrets_ignored(self):
        assert redact("ab cd", ["ab", None, ""]) == "ab cd"

    def test_token_argument(self):
        assert redact('openclaw devices list --token "abc123"') == "openclaw devices list --token ***"
        assert redact("openclaw --password=pw123 x") == "openclaw --password=*** x"

    def test_query_token(self):
        assert redact("GET http://gw:18789/api/nodes?token=abc&x=1") == "GET http://gw:18789/api/nodes?token=***&x=1"

    def test_shell_variables_unchanged(self):
        command = 'openclaw nodes status "$AUTH_FLAG" "$AUTH_VALUE" --json'
        assert redact(command) == command

    def test_empty(self):
        assert redact("", ["secret"]) == ""


class TestLogPerformance:
    """Tests for log_performance."""

    def test_logs_duration_and_context(self, caplog):
        logger = logging.getLogger("test.clawfleet.perf")
        caplog.set_level(logging.DEBUG, logger="test.clawfleet.perf")

        with log_performance(logger, "Remote command", command="status"):
            pass

        assert "Remote command completed in" in caplog.text
        assert "(command=status)" in caplog.text

    def test_threshold(self, caplog):
        logger = logging.getLogger("test.clawfleet.threshold")
        caplog.set_level(logging.DEBUG, logger="test.clawfleet.threshold")

        with log_performance(logger, "Fast operation", threshold=10.0):
            pass

        assert "Fast operation" not in caplog.text

    def test_logs_on_exception(self, caplog):
        logger = logging.getLogger("test.clawfleet.error")
        caplog.set_level(logging.DEBUG, logger="test.clawfleet.error")

        with pytest.raises(RuntimeError):
            with log_performance(logger, "Failing operation"):
                raise RuntimeError("boom")

        assert "Failing operation completed" in caplog.text


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_context(self):
        logger = StructuredLogger("test", instance="prod")
        logger.add_context(host="gw")
        logger.remove_context("instance", "missing")
        assert logger.context == {"host": "gw"}

    def test_message_with_context(self, caplog):
        logger = get_logger("test.clawfleet.structured", instance="prod")
        caplog.set_level(logging.INFO, logger="test.clawfleet.structured")

        logger.info("Reconciled fleet", method="node-list")

        assert "Reconciled fleet (instance=prod, method=node-list)" in caplog.text

    def test_trace_level(self, caplog):
        logger = get_logger("test.clawfleet.trace")
        caplog.set_level(TRACE, logger="test.clawfleet.trace")

        logger.trace("full command")

        assert caplog.records[0].levelname == "TRACE"

    def test_performance(self, caplog):
        logger = get_logger("test.clawfleet.sperf", instance="lab")
        caplog.set_level(logging.DEBUG, logger="test.clawfleet.sperf")

        with logger.performance("Reconciliation"):
            pass

        assert "Reconciliation completed in" in caplog.text
        assert "instance=lab" in caplog.text
