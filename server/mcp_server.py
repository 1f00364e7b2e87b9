#!/usr/bin/env python3
"""
mcp-ssh - MCP Server

Exposes tools to MCP clients for running commands on a configured SSH host,
either over persistent sessions or over one-shot connections.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from server.activity_log import ActivityLog
from server.config import ConfigurationError, Settings
from server.connection_policy import ConnectionPolicy
from server.executor import CommandExecutor, build_request, diagnostic_result, positive_int
from server.normalizer import normalize_payload
from server.session_monitor import SessionMonitor
from server.session_registry import SessionRegistry
from shared.logging_config import setup_logging
from shared.protocol import (
    TOOL_CONNECT,
    TOOL_DISCONNECT,
    TOOL_EXEC,
    TOOL_LIST_SESSIONS,
    ToolError,
)
from shared.version import SERVER_NAME, __version__

logger = logging.getLogger("mcp_ssh")

TOOLS = [
    Tool(
        name=TOOL_CONNECT,
        description="Open a persistent SSH session to the configured host. Host, port and credentials come from the server configuration; returns a sessionId for use with ssh_exec.",
        inputSchema={
            "type": "object",
            "properties": {
                "connectTimeoutMs": {
                    "type": "integer",
                    "description": "Handshake timeout in milliseconds (default: MCP_SSH_CONNECT_TIMEOUT_MS)",
                    "minimum": 1,
                },
            },
            "additionalProperties": False,
        },
    ),
    Tool(
        name=TOOL_EXEC,
        description="Execute a shell command over SSH. Runs in the given session when sessionId refers to an open session, otherwise over a one-shot connection that is closed afterwards. Returns stdout, stderr, exit code, exit signal and the command actually sent.",
        inputSchema={
            "type": "object",
            "properties": {
                "sessionId": {
                    "type": "string",
                    "description": "Session from ssh_connect (optional)",
                },
                "command": {
                    "type": "string",
                    "description": "Shell command to execute",
                    "minLength": 1,
                },
                "cwd": {
                    "type": "string",
                    "description": "Remote working directory",
                },
                "timeoutMs": {
                    "type": "integer",
                    "description": (
                        "Execution timeout in milliseconds, including time queued behind "
                        "other commands on the same session (default: MCP_SSH_EXEC_TIMEOUT_MS)"
                    ),
                    "minimum": 1,
                },
            },
            "required": ["command"],
            "additionalProperties": False,
        },
    ),
    Tool(
        name=TOOL_DISCONNECT,
        description="Close an SSH session. Returns disconnected=false if the session does not exist.",
        inputSchema={
            "type": "object",
            "properties": {
                "sessionId": {
                    "type": "string",
                    "description": "Session to close",
                },
            },
            "required": ["sessionId"],
            "additionalProperties": False,
        },
    ),
    Tool(
        name=TOOL_LIST_SESSIONS,
        description="List the IDs of open, ready SSH sessions.",
        inputSchema={
            "type": "object",
            "properties": {},
            "additionalProperties": False,
        },
    ),
]


class ToolHandler:
    """Route tool calls to the session registry and the executor."""

    def __init__(
        self,
        settings: Settings,
        registry: SessionRegistry,
        policy: ConnectionPolicy,
        executor: CommandExecutor,
        activity_log: ActivityLog,
    ):
        self.settings = settings
        self.registry = registry
        self.policy = policy
        self.executor = executor
        self.activity_log = activity_log

    async def handle(self, name: str, arguments: Any) -> dict:
        """Route a tool call to its implementation."""
        payload = normalize_payload(arguments)

        if name == TOOL_CONNECT:
            return await self._connect(payload)
        elif name == TOOL_EXEC:
            return await self._exec(payload, arguments)
        elif name == TOOL_DISCONNECT:
            return await self._disconnect(payload)
        elif name == TOOL_LIST_SESSIONS:
            return self._list_sessions()

        raise ValueError(f"Unknown tool: {name}")

    async def _connect(self, payload: dict) -> dict:
        params = self.policy.resolve_parameters(
            payload, connect_timeout_ms=positive_int(payload.get("connectTimeoutMs"))
        )
        session = await self.registry.connect(params)

        self.activity_log.write(
            f"{TOOL_CONNECT} host={session.host} port={session.port} "
            f"username={session.username} sessionId={session.session_id}"
        )
        return session.to_dict()

    async def _exec(self, payload: dict, arguments: Any) -> dict:
        request = build_request(payload, arguments, self.settings)
        if request is None:
            logger.warning(f"{TOOL_EXEC} called without a command: {payload!r}")
            return diagnostic_result(payload, arguments)

        result = await self.executor.execute(request, payload)
        return result.to_dict()

    async def _disconnect(self, payload: dict) -> dict:
        session_id = payload.get("sessionId")
        if not isinstance(session_id, str) or not await self.registry.disconnect(session_id):
            return {"disconnected": False}

        self.activity_log.write(f"{TOOL_DISCONNECT} sessionId={session_id}")
        self.activity_log.write("")
        return {"disconnected": True}

    def _list_sessions(self) -> dict:
        sessions = self.registry.list()
        self.activity_log.write(f"{TOOL_LIST_SESSIONS} count={len(sessions)}")
        return {"sessions": sessions}


def build_handler(settings: Settings) -> ToolHandler:
    """Wire the core components for one server process."""
    registry = SessionRegistry()
    policy = ConnectionPolicy(settings)
    activity_log = ActivityLog(settings.log_path or None)
    executor = CommandExecutor(settings, policy, registry, activity_log)
    return ToolHandler(settings, registry, policy, executor, activity_log)


def _error_text(payload: dict) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


async def respond(handler: ToolHandler, name: str, arguments: Any) -> list[TextContent]:
    """Run a tool call and render the result, or a structured error, as JSON text."""
    try:
        result = await handler.handle(name, arguments)
        return [TextContent(type="text", text=json.dumps(result, indent=2))]
    except ToolError as e:
        logger.warning(f"Tool error in {name}: {e.code} - {e.message}")
        return _error_text(e.to_dict())
    except asyncio.TimeoutError:
        logger.warning(f"Tool timeout in {name}")
        return _error_text(
            {
                "error": "TIMEOUT",
                "message": "Operation timed out",
                "recovery_hint": "Try with a longer timeout or break into smaller operations.",
            }
        )
    except ConnectionError as e:
        logger.warning(f"Connection error in {name}: {e}")
        return _error_text(
            {
                "error": "CONNECTION_ERROR",
                "message": f"SSH connection failed: {e}",
                "recovery_hint": "Use 'ssh_list_sessions' to check open sessions, or reconnect with 'ssh_connect'.",
            }
        )
    except Exception as e:
        logger.exception(f"Unexpected tool error in {name}")
        return _error_text(
            {
                "error": "INTERNAL_ERROR",
                "message": str(e),
                "recovery_hint": "An unexpected error occurred. Check server logs for details.",
            }
        )


def create_server(handler: ToolHandler) -> Server:
    """Create and configure the MCP server."""
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    # Argument shape is handled by the normalizer, which accepts wrapped payloads
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        return await respond(handler, name, arguments)

    return server


async def run_stdio(settings: Settings) -> None:
    """Run the MCP server with stdio transport."""
    logger.info(f"Starting {SERVER_NAME} MCP server (stdio)")

    handler = build_handler(settings)
    server = create_server(handler)

    if settings.allowed_hosts:
        logger.info(f"Allowed hosts: {sorted(settings.allowed_hosts)}")
    else:
        logger.info("No host allow-list configured")

    monitor = SessionMonitor(handler.registry, settings.session_check_interval)
    await monitor.start()

    try:
        async with stdio_server() as (read_stream, write_stream):
            logger.info("MCP server ready")
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await monitor.stop()
        await handler.registry.close_all()
        handler.activity_log.close()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="mcp-ssh MCP Server")
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a dotenv file (default: MCP_SSH_ENV_PATH or .env in the project root)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Diagnostic log level (default: MCP_SSH_LOG_LEVEL or INFO)",
    )
    args = parser.parse_args()

    try:
        settings = Settings.load(args.env_file)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # stdout carries the MCP protocol; diagnostics go to stderr
    setup_logging(
        name="mcp_ssh",
        level=args.log_level or settings.log_level,
        log_file=settings.diagnostic_log_file or None,
        stream=sys.stderr,
    )

    asyncio.run(run_stdio(settings))


if __name__ == "__main__":
    main()
