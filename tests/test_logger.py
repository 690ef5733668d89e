"""Tests for logger.py: setup_logging() and JsonFormatter.

Covers:
- CLI mode logging (stderr handler)
- Daemon mode logging (file handler)
- Debug level override
- Environment variable LOG_LEVEL handling
- JSON formatter output
- Third-party logger silencing

Strategy: Mock logging.basicConfig to verify setup_logging passes correct args,
since pytest's log capture plugin interferes with actual basicConfig calls.
"""

import json
import logging
import sys
from unittest.mock import patch

from vault_drive_sync.logger import JsonFormatter, setup_logging

BASIC_CONFIG = "vault_drive_sync.logger.logging.basicConfig"


def _close(handlers):
    for handler in handlers:
        if isinstance(handler, logging.FileHandler):
            handler.close()


# ---------------------------------------------------------------------------
# setup_logging tests
# ---------------------------------------------------------------------------


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch(BASIC_CONFIG)
    def test_cli_mode_logs_to_stderr(self, mock_basic):
        """CLI mode passes StreamHandler(stderr) to basicConfig."""
        setup_logging(mode="cli")

        mock_basic.assert_called_once()
        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)
        assert handlers[0].stream is sys.stderr

    @patch(BASIC_CONFIG)
    def test_daemon_mode_logs_to_file(self, mock_basic, tmp_path):
        """Daemon mode writes to the given file only."""
        log_file = tmp_path / "sync.log"
        setup_logging(mode="daemon", log_file=str(log_file))

        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.FileHandler)
        assert handlers[0].baseFilename == str(log_file)
        _close(handlers)

    @patch(BASIC_CONFIG)
    def test_daemon_mode_log_file_from_env(self, mock_basic, tmp_path, monkeypatch):
        """Daemon mode falls back to LOG_FILE."""
        log_file = tmp_path / "env.log"
        monkeypatch.setenv("LOG_FILE", str(log_file))
        setup_logging(mode="daemon")

        handlers = mock_basic.call_args[1]["handlers"]
        assert handlers[0].baseFilename == str(log_file)
        _close(handlers)

    @patch(BASIC_CONFIG)
    def test_debug_overrides_level(self, mock_basic):
        """debug=True passes DEBUG level to basicConfig."""
        setup_logging(mode="cli", debug=True)

        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch(BASIC_CONFIG)
    def test_env_log_level_honored(self, mock_basic, monkeypatch):
        """LOG_LEVEL env var is reflected in basicConfig level."""
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.ERROR

    @patch(BASIC_CONFIG)
    def test_debug_beats_env(self, mock_basic, monkeypatch):
        """debug=True overrides LOG_LEVEL env var."""
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging(mode="cli", debug=True)

        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch(BASIC_CONFIG)
    def test_unknown_env_level_falls_back_to_info(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch(BASIC_CONFIG)
    def test_cli_mode_with_log_file(self, mock_basic, tmp_path):
        """CLI mode with log_file creates both stderr and file handlers."""
        setup_logging(mode="cli", log_file=str(tmp_path / "cli.log"))

        handlers = mock_basic.call_args[1]["handlers"]
        file_handlers = [h for h in handlers if isinstance(h, logging.FileHandler)]
        assert len(handlers) == 2
        assert len(file_handlers) == 1
        _close(handlers)

    @patch(BASIC_CONFIG)
    def test_json_format_uses_json_formatter(self, mock_basic):
        """log_format='json' sets JsonFormatter on handlers."""
        setup_logging(mode="cli", log_format="json")

        handlers = mock_basic.call_args[1]["handlers"]
        assert all(isinstance(h.formatter, JsonFormatter) for h in handlers)

    @patch(BASIC_CONFIG)
    def test_third_party_silenced(self, _mock_basic, monkeypatch):
        """Non-DEBUG mode silences urllib3/requests loggers."""
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging(mode="cli")

        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("requests").level == logging.WARNING

    @patch(BASIC_CONFIG)
    def test_daemon_default_level_is_warning(self, mock_basic, tmp_path, monkeypatch):
        """Daemon mode defaults to WARNING level."""
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging(mode="daemon", log_file=str(tmp_path / "d.log"))

        assert mock_basic.call_args[1]["level"] == logging.WARNING
        _close(mock_basic.call_args[1]["handlers"])

    @patch(BASIC_CONFIG)
    def test_cli_default_level_is_info(self, mock_basic, monkeypatch):
        """CLI mode defaults to INFO level."""
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging(mode="cli")

        assert mock_basic.call_args[1]["level"] == logging.INFO


# ---------------------------------------------------------------------------
# JsonFormatter tests
# ---------------------------------------------------------------------------


def _record(msg, args=(), exc_info=None, level=logging.INFO):
    return logging.LogRecord(
        name="vault_drive_sync.sync.engine",
        level=level,
        pathname="engine.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_output(self):
        """Formatted output is valid JSON with required keys."""
        formatter = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
        data = json.loads(formatter.format(_record("Pushed %d files", (3,))))

        assert "ts" in data
        assert data["level"] == "INFO"
        assert data["logger"] == "vault_drive_sync.sync.engine"
        assert data["msg"] == "Pushed 3 files"
        assert "exc" not in data

    def test_includes_exception(self):
        """Exception info is included in 'exc' key."""
        formatter = JsonFormatter()
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        output = formatter.format(
            _record("Upload failed", exc_info=exc_info, level=logging.ERROR)
        )
        data = json.loads(output)
        assert "ValueError" in data["exc"]
        assert "test error" in data["exc"]

    def test_single_line_output(self):
        """Output is a single line even for multi-line messages."""
        output = JsonFormatter().format(_record("line one\nline two"))

        assert "\n" not in output
        assert json.loads(output)["msg"] == "line one\nline two"
