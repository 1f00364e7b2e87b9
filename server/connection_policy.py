"""Connection policy: where the server may connect and with which credentials."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from server.config import Settings
from shared.protocol import CONNECTION_IDENTITY_FIELDS, KeyResolutionError, PolicyViolationError

logger = logging.getLogger("mcp_ssh.policy")


@dataclass(frozen=True)
class ConnectionParameters:
    """Everything needed to open one SSH connection."""

    host: str
    port: int
    username: str
    password: str | None = field(default=None, repr=False)
    private_key: str | None = field(default=None, repr=False)
    passphrase: str | None = field(default=None, repr=False)
    connect_timeout_ms: int = 20000


def expand_home(path: str) -> Path:
    """Expand a leading ``~`` and make the path absolute."""
    return Path(path).expanduser().resolve()


class ConnectionPolicy:
    """
    Resolve connection parameters from configuration only.

    Callers of the tools never choose the host or the credentials; any attempt
    to pass them is rejected before a socket is opened.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def is_host_allowed(self, host: str) -> bool:
        """An empty allow-list means no restriction."""
        return not self._settings.allowed_hosts or host in self._settings.allowed_hosts

    def reject_overrides(self, payload: dict) -> None:
        """Refuse caller-supplied connection identity fields."""
        supplied = [name for name in CONNECTION_IDENTITY_FIELDS if payload.get(name) is not None]
        if supplied:
            logger.warning(f"Rejected caller-supplied connection fields: {supplied}")
            raise PolicyViolationError(
                "Connection parameters are taken from the server configuration only",
                details={"rejected_fields": supplied},
            )

    def resolve_private_key(
        self, private_key: str | None = None, private_key_path: str | None = None
    ) -> str | None:
        """
        Resolve private key material.

        Precedence: inline value, explicit path, configured default path.

        Raises:
            KeyResolutionError: If a path is given but cannot be read
        """
        if private_key and private_key.strip():
            return private_key

        for candidate in (private_key_path, self._settings.default_private_key_path):
            if candidate and candidate.strip():
                return self._read_key_file(candidate.strip())

        return None

    def _read_key_file(self, path: str) -> str:
        resolved = expand_home(path)
        try:
            return resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
            raise KeyResolutionError(str(resolved), reason)

    def resolve_parameters(
        self, payload: dict | None = None, connect_timeout_ms: int | None = None
    ) -> ConnectionParameters:
        """
        Build connection parameters for a new connection.

        Args:
            payload: Normalized caller arguments, checked for identity overrides
            connect_timeout_ms: Handshake deadline (default: configured value)

        Raises:
            PolicyViolationError: Overrides supplied, host/username missing,
                or host not in the allow-list
            KeyResolutionError: Configured key file unreadable
        """
        self.reject_overrides(payload or {})

        settings = self._settings
        private_key = self.resolve_private_key()

        missing = [
            name
            for name, value in (
                ("MCP_SSH_DEFAULT_HOST", settings.default_host),
                ("MCP_SSH_DEFAULT_USERNAME", settings.default_username),
            )
            if not value
        ]
        if missing:
            raise PolicyViolationError(
                "MCP_SSH_DEFAULT_HOST or MCP_SSH_DEFAULT_USERNAME is not configured",
                details={"missing": missing},
            )

        if not self.is_host_allowed(settings.default_host):
            raise PolicyViolationError(
                f"Host {settings.default_host} is not allowed by MCP_SSH_ALLOWED_HOSTS",
                details={"host": settings.default_host},
            )

        return ConnectionParameters(
            host=settings.default_host,
            port=settings.default_port,
            username=settings.default_username,
            password=settings.default_password or None,
            private_key=private_key,
            passphrase=settings.default_passphrase or None,
            connect_timeout_ms=connect_timeout_ms or settings.connect_timeout_ms,
        )
