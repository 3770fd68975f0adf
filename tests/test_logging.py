"""Tests for logging utilities."""

import logging

import pytest

from fleetops.logging import (
    LEVEL_NAMES,
    OUTPUT_LOGGER_NAME,
    TRACE,
    OutputAwareFormatter,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    log_output_line,
    log_scope,
)


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def _record(name="fleetops.runners", msg="hello", **extra):
    record = logging.LogRecord(name, logging.INFO, __file__, 10, msg, None, None)
    record.__dict__.update(extra)
    return record


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_default(self):
        """Test default logging configuration."""
        configure_logging()
        assert logging.root.level == logging.WARNING

    def test_configure_custom_level(self):
        configure_logging(level=logging.DEBUG)
        assert logging.root.level == logging.DEBUG

    def test_configure_replaces_handlers(self):
        configure_logging()
        configure_logging()
        stream_handlers = [h for h in logging.root.handlers if type(h) is logging.StreamHandler]
        assert len(stream_handlers) == 1

    def test_handlers_render_output_lines(self):
        configure_logging(level=logging.INFO)
        assert all(isinstance(h.formatter, OutputAwareFormatter) for h in logging.root.handlers)

    def test_configure_log_file(self, tmp_path):
        """Test file logging with a separate, more detailed level."""
        log_file = tmp_path / "logs" / "fleetops.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.DEBUG)

        logging.getLogger("test.file").debug("written to file only")
        for handler in logging.root.handlers:
            handler.flush()

        assert logging.root.level == logging.DEBUG
        assert "written to file only" in log_file.read_text()

    def test_trace_file_captures_command_output(self, tmp_path):
        """Test that a TRACE log file receives output lines in the activity-log layout."""
        log_file = tmp_path / "run.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=TRACE)

        log_output_line("web01", "stdout", "up 3 days")
        for handler in logging.root.handlers:
            handler.flush()

        line = log_file.read_text().strip()
        assert line.startswith("[")
        assert line.endswith("] TRACE web01 [stdout] up 3 days")


class TestOutputAwareFormatter:
    """Tests for OutputAwareFormatter."""

    def test_plain_record_uses_given_format(self):
        formatter = OutputAwareFormatter("%(levelname)s [%(name)s] %(message)s")
        assert formatter.format(_record()) == "INFO [fleetops.runners] hello"

    def test_output_record_uses_activity_layout(self):
        formatter = OutputAwareFormatter("%(levelname)s %(message)s")
        record = _record(OUTPUT_LOGGER_NAME, "disk full", host="db01", stream="stderr")

        text = formatter.format(record)

        assert text.endswith("] INFO  db01 [stderr] disk full")


class TestLogOutputLine:
    """Tests for log_output_line."""

    def test_logged_at_trace_with_host(self, caplog):
        caplog.set_level(TRACE, logger=OUTPUT_LOGGER_NAME)

        log_output_line("web02", "stdout", "Reading package lists...")

        [record] = caplog.records
        assert record.name == OUTPUT_LOGGER_NAME
        assert record.levelno == TRACE
        assert record.host == "web02"
        assert record.stream == "stdout"
        assert record.getMessage() == "Reading package lists..."

    def test_not_emitted_above_trace(self, caplog):
        caplog.set_level(logging.DEBUG, logger=OUTPUT_LOGGER_NAME)
        log_output_line("web02", "stdout", "quiet")
        assert caplog.records == []


class TestLevels:
    """Tests for level helpers."""

    @pytest.mark.parametrize(
        "verbosity,expected",
        [(-1, logging.WARNING), (0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG), (3, TRACE), (7, TRACE)],
    )
    def test_verbosity(self, verbosity, expected):
        assert get_level_from_verbosity(verbosity) == expected

    def test_level_from_name(self):
        assert get_level_from_name("trace") == TRACE
        assert get_level_from_name("INFO") == logging.INFO

    def test_invalid_level_name(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            get_level_from_name("loud")

    def test_level_names_cover_trace(self):
        assert LEVEL_NAMES["trace"] == TRACE
        assert logging.getLevelName(TRACE) == "TRACE"


class TestLogScope:
    """Tests for log_scope context manager."""

    def test_log_scope_with_context(self, caplog):
        """Test that start and finish are logged with context and elapsed time."""
        logger = logging.getLogger("test.scope.context")
        caplog.set_level(logging.DEBUG, logger="test.scope.context")

        with log_scope(logger, "Fleet run", hosts=10):
            pass

        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "Fleet run started (hosts=10)"
        assert messages[1].startswith("Fleet run finished in 0.")
        assert messages[1].endswith("s (hosts=10)")

    def test_log_scope_exception(self, caplog):
        """Test that a failure is logged at ERROR and re-raised."""
        logger = logging.getLogger("test.scope.exception")
        caplog.set_level(logging.DEBUG, logger="test.scope.exception")

        with pytest.raises(ValueError):
            with log_scope(logger, "Failing operation"):
                raise ValueError("test error")

        failure = caplog.records[-1]
        assert failure.levelno == logging.ERROR
        assert "Failing operation failed after" in failure.getMessage()
        assert failure.getMessage().endswith(": test error")
        assert "finished" not in caplog.text

    def test_log_scope_level(self, caplog):
        logger = logging.getLogger("test.scope.level")
        caplog.set_level(logging.INFO, logger="test.scope.level")

        with log_scope(logger, "Hidden"):
            pass

        assert caplog.records == []
