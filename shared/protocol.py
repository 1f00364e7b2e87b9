"""Tool names and structured error types shared by the MCP server."""

# Tool names
TOOL_CONNECT = "ssh_connect"
TOOL_EXEC = "ssh_exec"
TOOL_DISCONNECT = "ssh_disconnect"
TOOL_LIST_SESSIONS = "ssh_list_sessions"

# Fields a caller may never supply; connection identity comes from configuration only
CONNECTION_IDENTITY_FIELDS = (
    "host",
    "port",
    "username",
    "password",
    "privateKey",
    "privateKeyPath",
)


# =============================================================================
# Custom Exception Classes for MCP Tools
# =============================================================================


class ToolError(Exception):
    """Base exception for MCP tool errors with structured error responses."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
        recovery_hint: str | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to structured error response."""
        result = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recovery_hint"] = self.recovery_hint
        return result


class PolicyViolationError(ToolError):
    """Raised when a request breaks the connection policy."""

    def __init__(self, reason: str, details: dict | None = None):
        super().__init__(
            code="POLICY_VIOLATION",
            message=reason,
            details=details,
            recovery_hint="Connection parameters come from the server configuration only. "
            "Check MCP_SSH_DEFAULT_* and MCP_SSH_ALLOWED_HOSTS.",
        )


class ConnectTimeoutError(ToolError):
    """Raised when the SSH handshake does not finish before its deadline."""

    def __init__(self, host: str, timeout_ms: int):
        super().__init__(
            code="CONNECT_TIMEOUT",
            message=f"SSH connection to {host} timed out after {timeout_ms} ms",
            details={"host": host, "timeout_ms": timeout_ms},
            recovery_hint="Verify the host is reachable, or retry with a larger connectTimeoutMs.",
        )


class ExecTimeoutError(ToolError):
    """Raised when a remote command exceeds its timeout."""

    def __init__(self, command: str, timeout_ms: int):
        super().__init__(
            code="EXEC_TIMEOUT",
            message=f"SSH command timed out after {timeout_ms} ms",
            details={"command": command[:100], "timeout_ms": timeout_ms},
            recovery_hint="Try with a larger timeoutMs, or break the command into smaller operations.",
        )


class SSHTransportError(ToolError):
    """Raised when the SSH transport fails (handshake, auth, or channel error)."""

    def __init__(self, host: str, reason: str):
        super().__init__(
            code="TRANSPORT_ERROR",
            message=reason,
            details={"host": host},
            recovery_hint="Verify host is reachable, credentials are correct, and SSH is enabled on the target.",
        )


class KeyResolutionError(ToolError):
    """Raised when private key material cannot be read or parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code="KEY_RESOLUTION_ERROR",
            message=f"Cannot load private key {path}: {reason}",
            details={"path": path, "reason": reason},
            recovery_hint="Check MCP_SSH_DEFAULT_PRIVATE_KEY_PATH and the key passphrase.",
        )
