"""Centralized logging configuration: diagnostic log and activity log."""

import logging
import queue
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

# Default settings
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

ACTIVITY_LOGGER_NAME = "mcp_ssh_activity"


def setup_logging(
    name: str,
    level: str = "INFO",
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    stream: object = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> logging.Logger:
    """
    Configure logging with optional file rotation.

    Args:
        name: Logger name (e.g., 'mcp_ssh')
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file. If None, only console logging.
        max_bytes: Maximum size of each log file before rotation (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        stream: Stream for console logging (default: stderr, stdout carries MCP)
        log_format: Log message format
        date_format: Timestamp format

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Clear any existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(log_format, datefmt=date_format)

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


class ActivityFormatter(logging.Formatter):
    """Render records as ``[ISO-8601 timestamp] message``.

    An empty message renders as an empty line so the file gets a visual
    separator between sessions.
    """

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record):
        message = record.getMessage()
        if not message:
            return ""
        return f"[{self.formatTime(record)}] {message}"


class QuietFileHandler(logging.FileHandler):
    """File handler that drops records it cannot write."""

    def emit(self, record):
        # FileHandler opens a delayed stream outside its own error handling
        try:
            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record):
        # Activity log durability is best-effort
        pass


def setup_activity_logging(path: str | Path) -> tuple[logging.Logger, QueueListener]:
    """
    Configure the append-only activity log.

    Records are queued on the caller's thread and written by a listener
    thread, so a slow or failing disk never delays a tool response.

    Args:
        path: Activity log file path

    Returns:
        (logger, listener). Call ``listener.stop()`` to flush on shutdown.
    """
    log_path = Path(path).expanduser()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    file_handler = QuietFileHandler(log_path, encoding="utf-8", delay=True)
    file_handler.setFormatter(ActivityFormatter())

    records: queue.SimpleQueue = queue.SimpleQueue()
    listener = QueueListener(records, file_handler)
    listener.start()

    logger = logging.getLogger(ACTIVITY_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.addHandler(QueueHandler(records))
    logger.propagate = False

    return logger, listener
