import json
import logging
import os
import sys

DEFAULT_LOG_FILE = "/tmp/vault-drive-sync.log"
_TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured log output.

    Produces one JSON object per record with fields: ts, level, logger, msg.
    Exception info is included as an "exc" field when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=_DATE_FORMAT)
    return logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT)


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
) -> None:
    """
    Configure logging for the given execution mode.

    Args:
        mode: "cli" logs to stderr (and log_file when given); "daemon" logs
            to a file only, so scheduled runs never write to the terminal.
        debug: If True, overrides LOG_LEVEL to DEBUG.
        log_file: Log file path (overrides LOG_FILE env var in daemon mode).
        log_format: "text" (default) or "json".

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: WARNING for daemon mode, INFO for CLI mode.
        LOG_FILE: Log file path for daemon mode.
                  Default: /tmp/vault-drive-sync.log
    """
    default_level = "WARNING" if mode == "daemon" else "INFO"
    env_level = os.getenv("LOG_LEVEL", default_level).upper()

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "daemon":
        final_log_file = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
        handlers.append(logging.FileHandler(final_log_file, mode="a"))
    else:
        handlers.append(logging.StreamHandler(sys.stderr))
        if log_file:
            handlers.append(logging.FileHandler(log_file, mode="a"))

    formatter = _make_formatter(log_format)
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=log_level, handlers=handlers)

    # Drive transfers are noisy at INFO
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
