"""Shared protocol definitions for mcp-ssh."""

from .protocol import (
    TOOL_CONNECT,
    TOOL_DISCONNECT,
    TOOL_EXEC,
    TOOL_LIST_SESSIONS,
    ConnectTimeoutError,
    ExecTimeoutError,
    KeyResolutionError,
    PolicyViolationError,
    SSHTransportError,
    ToolError,
)

__all__ = [
    "TOOL_CONNECT",
    "TOOL_DISCONNECT",
    "TOOL_EXEC",
    "TOOL_LIST_SESSIONS",
    "ConnectTimeoutError",
    "ExecTimeoutError",
    "KeyResolutionError",
    "PolicyViolationError",
    "SSHTransportError",
    "ToolError",
]
