"""Unit tests for logging setup, the trace-aware formatter and get_logger."""

import logging
import os
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from rover_autopilot.utils.logging import RoverFormatter, get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before and after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers.copy()

    yield

    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.setLevel(original_level)
    root.handlers.clear()
    for handler in original_handlers:
        root.addHandler(handler)


def _record(name="rover_autopilot.pipeline.workflow", level=logging.INFO, msg="Queued %s", args=("Add login",)):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="workflow.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )
    record.created = datetime(2024, 5, 6, 7, 8, 9).timestamp()
    return record


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only_by_default(self):
        """Test a single stderr handler with the trace-aware formatter."""
        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert isinstance(handler, logging.StreamHandler)
        assert handler.stream is sys.stderr
        assert isinstance(handler.formatter, RoverFormatter)

    def test_level_is_case_insensitive(self):
        """Test config levels may be written in any case."""
        setup_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_reconfigure_replaces_handlers(self, tmp_path):
        """Test the CLI's second setup call (after loading config) does not stack handlers."""
        setup_logging(level="INFO")
        setup_logging(level="WARNING", log_file=tmp_path / "run.log")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 2
        assert len([h for h in root.handlers if isinstance(h, RotatingFileHandler)]) == 1

    def test_file_handler_rotation_settings(self, tmp_path):
        """Test rotation size and backups follow rotation_mb and retention_days."""
        log_file = tmp_path / "nested" / "autopilot.log"
        setup_logging(log_file=log_file, rotation_mb=2, retention_days=4)

        handlers = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        assert len(handlers) == 1
        assert handlers[0].baseFilename == str(log_file)
        assert handlers[0].maxBytes == 2 * 1024 * 1024
        assert handlers[0].backupCount == 4
        assert handlers[0].formatter.use_colors is False
        assert log_file.parent.is_dir()

    def test_rotation_floor(self, tmp_path):
        """Test zero rotation and retention still rotate at 1 MB with one backup."""
        setup_logging(log_file=tmp_path / "autopilot.log", rotation_mb=0, retention_days=0)

        handler = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)][0]
        assert handler.maxBytes == 1024 * 1024
        assert handler.backupCount == 1

    def test_log_dir_creates_timestamped_file(self, tmp_path):
        """Test a log directory gets one rover_autopilot_<timestamp>.log file."""
        log_dir = tmp_path / ".rover" / "logs"
        setup_logging(log_dir=log_dir)

        handlers = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        assert len(handlers) == 1
        assert handlers[0].baseFilename.startswith(str(log_dir / "rover_autopilot_"))
        assert handlers[0].baseFilename.endswith(".log")

    def test_old_logs_removed(self, tmp_path):
        """Test only log files past the retention window are deleted."""
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        stale = log_dir / "rover_autopilot_20240101_000000.log"
        stale_rotated = log_dir / "rover_autopilot_20240101_000000.log.1"
        recent = log_dir / "rover_autopilot_recent.log"
        other = log_dir / "notes.txt"
        for path in (stale, stale_rotated, recent, other):
            path.write_text("x")
        old_time = time.time() - 30 * 86400
        for path in (stale, stale_rotated, other):
            os.utime(path, (old_time, old_time))

        setup_logging(log_dir=log_dir, retention_days=7)

        assert not stale.exists()
        assert not stale_rotated.exists()
        assert recent.exists()
        assert other.exists()

    def test_retention_disabled_keeps_logs(self, tmp_path):
        """Test retention_days <= 0 never deletes old logs."""
        log_dir = tmp_path / "logs"
        log_dir.mkdir()
        stale = log_dir / "old.log"
        stale.write_text("x")
        old_time = time.time() - 365 * 86400
        os.utime(stale, (old_time, old_time))

        setup_logging(log_dir=log_dir, retention_days=0)

        assert stale.exists()

    def test_console_disabled(self, tmp_path):
        """Test console=False leaves only the file handler."""
        setup_logging(log_file=tmp_path / "run.log", console=False)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RotatingFileHandler)

    def test_asyncio_logger_suppressed(self):
        """Test asyncio chatter stays quiet even when debugging."""
        setup_logging(level="DEBUG")
        assert logging.getLogger("asyncio").level == logging.WARNING


class TestRoverFormatter:
    """Tests for RoverFormatter."""

    def test_plain_line_structure(self):
        """Test time, padded level, short logger name and message."""
        output = RoverFormatter(use_colors=False).format(_record())
        assert output == "[07:08:09] INFO     workflow     Queued Add login"

    def test_trace_prefix_is_shortened(self):
        """Test a trace id renders as its first eight characters."""
        record = _record()
        record.trace_id = "9f8e7d6c-5b4a-3210-fedc-ba9876543210"

        output = RoverFormatter(use_colors=False).format(record)

        assert output == "[07:08:09] INFO     workflow     [9f8e7d6c] Queued Add login"

    def test_empty_trace_id_has_no_prefix(self):
        """Test a blank trace id adds nothing."""
        record = _record()
        record.trace_id = ""
        assert "[]" not in RoverFormatter(use_colors=False).format(record)

    def test_colors_only_on_a_terminal(self):
        """Test ANSI colors need both use_colors and a tty."""
        formatter = RoverFormatter(use_colors=True)
        record = _record(level=logging.WARNING, msg="No free task slots", args=())

        with patch("sys.stderr.isatty", return_value=True):
            colored = formatter.format(record)
        with patch("sys.stderr.isatty", return_value=False):
            plain = formatter.format(record)

        assert "\033[33mWARNING\033[0m" in colored
        assert "\033[" not in plain

    def test_exception_appended(self):
        """Test a logged exception's traceback follows the line."""
        try:
            raise ValueError("bad meta")
        except ValueError:
            record = _record(level=logging.ERROR, msg="Stage failed", args=())
            record.exc_info = sys.exc_info()

        lines = RoverFormatter(use_colors=False).format(record).splitlines()

        assert lines[0] == "[07:08:09] ERROR    workflow     Stage failed"
        assert lines[-1] == "ValueError: bad meta"


class TestGetLogger:
    """Tests for get_logger."""

    def test_module_logger(self):
        """Test get_logger returns the same logger modules get from logging."""
        logger = get_logger("rover_autopilot.pipeline.resolver")
        assert logger is logging.getLogger("rover_autopilot.pipeline.resolver")

    def test_trace_id_through_extra(self, capsys):
        """Test a trace id passed as extra reaches the console line."""
        setup_logging(level="INFO", use_colors=False)

        get_logger("rover_autopilot.pipeline.committer").info(
            "Committed %s", "Add login", extra={"trace_id": "0123456789abcdef"}
        )

        err = capsys.readouterr().err
        assert "INFO     committer    [01234567] Committed Add login" in err

    def test_debug_filtered_at_info(self, capsys):
        """Test DEBUG records are dropped at INFO level."""
        setup_logging(level="INFO", use_colors=False)
        logger = get_logger("rover_autopilot.state.traces")

        logger.debug("Step transition")
        logger.info("Trace saved")

        err = capsys.readouterr().err
        assert "Step transition" not in err
        assert "Trace saved" in err
