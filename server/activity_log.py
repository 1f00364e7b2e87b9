"""Append-only activity log of tool calls and command output."""

import logging
from logging.handlers import QueueListener
from pathlib import Path

from shared.logging_config import setup_activity_logging

BLOCK_INDENT = "  "


def indent_block(body: str) -> str:
    """Indent every line of a multi-line body under its title."""
    return "\n".join(f"{BLOCK_INDENT}{line}" if line else "" for line in body.splitlines())


class ActivityLog:
    """
    Timestamped activity records written in the background.

    A disabled log (no path configured) accepts and drops every write. Write
    failures never reach the caller.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else None
        self._logger: logging.Logger | None = None
        self._listener: QueueListener | None = None
        if self.path:
            self._logger, self._listener = setup_activity_logging(self.path)

    @property
    def enabled(self) -> bool:
        return self._logger is not None

    def write(self, message: str) -> None:
        """Append ``[timestamp] message``; an empty message appends a blank line."""
        if self._logger:
            self._logger.info(message)

    def write_block(self, title: str, body: str) -> None:
        """Append a title line followed by the indented body."""
        if not self._logger:
            return
        block = indent_block(body)
        self._logger.info(f"{title}\n{block}" if block else title)

    def close(self) -> None:
        """Flush pending records and stop the writer thread."""
        if self._listener:
            self._listener.stop()
            self._listener = None
        self._logger = None


def format_exec_body(stdout: str, stderr: str) -> str:
    """Command output as logged: stdout, then a ``[stderr]`` section if any."""
    if stderr:
        return f"{stdout}\n[stderr]\n{stderr}" if stdout else f"[stderr]\n{stderr}"
    return stdout
