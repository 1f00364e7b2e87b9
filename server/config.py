"""Configuration management for the mcp-ssh server."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"

DEFAULT_PORT = 22
DEFAULT_CONNECT_TIMEOUT_MS = 20000
DEFAULT_EXEC_TIMEOUT_MS = 60000
DEFAULT_SESSION_CHECK_INTERVAL = 30.0


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key


@dataclass
class Settings:
    """Server configuration, read once at startup."""

    # Connection policy
    allowed_hosts: frozenset[str] = field(default_factory=frozenset)
    default_host: str = ""
    default_port: int = DEFAULT_PORT
    default_username: str = ""
    default_password: str = ""
    default_private_key_path: str = ""
    default_passphrase: str = ""
    default_command: str = ""

    # Timeouts
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    exec_timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS

    # Remote locale
    remote_lang: str = ""
    remote_lc_all: str = ""

    # Logging
    log_path: str = ""
    log_level: str = "INFO"
    diagnostic_log_file: str = ""

    # Background pruning of closed sessions
    session_check_interval: float = DEFAULT_SESSION_CHECK_INTERVAL

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Settings":
        """Build settings from an environment mapping."""
        return cls(
            allowed_hosts=parse_host_list(environ.get("MCP_SSH_ALLOWED_HOSTS", "")),
            default_host=environ.get("MCP_SSH_DEFAULT_HOST", ""),
            default_port=_int(environ, "MCP_SSH_DEFAULT_PORT", DEFAULT_PORT),
            default_username=environ.get("MCP_SSH_DEFAULT_USERNAME", ""),
            default_password=environ.get("MCP_SSH_DEFAULT_PASSWORD", ""),
            default_private_key_path=environ.get("MCP_SSH_DEFAULT_PRIVATE_KEY_PATH", ""),
            default_passphrase=environ.get("MCP_SSH_DEFAULT_PASSPHRASE", ""),
            default_command=environ.get("MCP_SSH_DEFAULT_COMMAND", ""),
            connect_timeout_ms=_int(
                environ, "MCP_SSH_CONNECT_TIMEOUT_MS", DEFAULT_CONNECT_TIMEOUT_MS
            ),
            exec_timeout_ms=_int(environ, "MCP_SSH_EXEC_TIMEOUT_MS", DEFAULT_EXEC_TIMEOUT_MS),
            remote_lang=environ.get("MCP_SSH_REMOTE_LANG", ""),
            remote_lc_all=environ.get("MCP_SSH_REMOTE_LC_ALL", ""),
            log_path=environ.get("MCP_SSH_LOG_PATH", ""),
            log_level=environ.get("MCP_SSH_LOG_LEVEL", "INFO"),
            diagnostic_log_file=environ.get("MCP_SSH_DIAGNOSTIC_LOG_FILE", ""),
            session_check_interval=_float(
                environ, "MCP_SSH_SESSION_CHECK_INTERVAL", DEFAULT_SESSION_CHECK_INTERVAL
            ),
        )

    @classmethod
    def load(cls, env_file: str | Path | None = None) -> "Settings":
        """Load configuration from an optional dotenv file and the process environment.

        Variables already set in the process environment take precedence
        over the file.
        """
        path = Path(env_file or os.environ.get("MCP_SSH_ENV_PATH") or DEFAULT_ENV_FILE)
        if path.exists():
            load_dotenv(path, override=False)
        return cls.from_env(os.environ)


def parse_host_list(value: str) -> frozenset[str]:
    """Parse a comma-separated host list, ignoring blanks."""
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", key=key)
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}", key=key)
    return value


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", key=key)
    # NaN fails this comparison too
    if not value > 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}", key=key)
    return value
